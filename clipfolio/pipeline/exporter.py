"""Export pipeline: trimmed, remixed, optionally size-targeted encodes.

One job runs per caller session at a time. Each job goes
PENDING -> RUNNING -> SUCCEEDED | CANCELED | FAILED and never leaves a
terminal state. Cancellation is addressed to a session, kills that
session's live ffmpeg process and settles the job as CANCELED instead of
raising.
"""

import logging
import re
import subprocess
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from clipfolio.config.models import ExportConfig
from clipfolio.domain.errors import ExportError, MediaProbeError
from clipfolio.domain.events import ExportFinished, ExportProgressUpdated, ExportRetry, ExportStarted
from clipfolio.domain.models import ExportJob, ExportRequest, ExportResult, ExportStatus, OutputKind, QualityMode
from clipfolio.infrastructure.event_bus import EventBus
from clipfolio.infrastructure.ffmpeg import FFmpegAdapter
from clipfolio.infrastructure.ffprobe import FFprobeAdapter
from clipfolio.infrastructure.housekeeping import HousekeepingService
from clipfolio.pipeline.export_plan import build_plan, initial_video_bitrate_kbps, shrink_bitrate_kbps

# Exit descriptions that mean the process was killed rather than failing on its own
CANCEL_PATTERN = re.compile(r"kill|SIGKILL|terminated|canceled", re.IGNORECASE)

MEGABYTE = 1024 * 1024

ProgressHandler = Callable[[ExportProgressUpdated], None]


class ExportPipeline:
    """Drives ffmpeg for export jobs and tracks one live process per session."""

    def __init__(
        self,
        config: ExportConfig,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: EventBus,
        housekeeping: Optional[HousekeepingService] = None,
    ):
        self.config = config
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus
        self.housekeeping = housekeeping or HousekeepingService()
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._jobs: Dict[str, ExportJob] = {}
        self._active: Dict[str, subprocess.Popen] = {}
        self._canceled: set = set()
        self._used_tokens: set = set()

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def active_job(self, session_id: str = "default") -> Optional[ExportJob]:
        with self._lock:
            return self._jobs.get(session_id)

    def cancel(self, session_id: str = "default") -> bool:
        """Cancels the session's running job; returns False when nothing was running."""
        with self._lock:
            if session_id not in self._jobs:
                return False
            # The flag goes up before the kill so the dying process reads as canceled
            self._canceled.add(session_id)
            process = self._active.get(session_id)
        if process is not None:
            self.logger.info(f"EXPORT_CANCEL: session={session_id} pid={getattr(process, 'pid', '?')}")
            self.ffmpeg_adapter.kill(process)
        return True

    def _consume_cancel(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._canceled:
                self._canceled.discard(session_id)
                return True
        return False

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _count_audio_streams(self, source: Path) -> int:
        try:
            return len(self.ffprobe_adapter.audio_streams(self.ffprobe_adapter.probe(source)))
        except MediaProbeError as exc:
            self.logger.warning(f"Probe failed before export, assuming no audio: {exc}")
            return 0

    def export(
        self,
        request: ExportRequest,
        session_id: str = "default",
        on_progress: Optional[ProgressHandler] = None,
    ) -> ExportResult:
        """Runs the export to completion; cancellation returns a CANCELED result."""
        if not request.source.exists():
            raise FileNotFoundError(f"Source not found: {request.source}")

        job = ExportJob(request=request, session_id=session_id)
        with self._lock:
            if request.job_token in self._used_tokens:
                raise ExportError(f"Job token {request.job_token} was already used")
            self._used_tokens.add(request.job_token)
            previous = self._jobs.get(session_id)
            if previous is not None:
                self.logger.warning(
                    f"Session {session_id} started {request.job_token} while {previous.request.job_token} is still tracked"
                )
            self._jobs[session_id] = job
            self._canceled.discard(session_id)

        try:
            job.transition(ExportStatus.RUNNING)
            self.logger.info(
                f"EXPORT_START: {request.source.name} token={request.job_token} quality={request.quality.value} "
                f"kind={request.output_kind.value} window={request.trim_start}-{request.trim_end}"
            )
            self.event_bus.publish(ExportStarted(job_token=request.job_token, source=request.source, output_path=request.output_path))

            num_audio = self._count_audio_streams(request.source)
            if request.output_kind == OutputKind.AUDIO_ONLY or request.quality != QualityMode.SIZE_TARGETED:
                completed = self._encode_once(job, num_audio, None, on_progress)
            else:
                completed = self._encode_to_size(job, num_audio, on_progress)
        except Exception as exc:
            job.error_message = str(exc)
            job.transition(ExportStatus.FAILED)
            self.logger.error(f"EXPORT_FAILED: {request.source.name} token={request.job_token}: {exc}")
            self._apply_partial_policy(request.output_path)
            self.event_bus.publish(ExportFinished(
                job_token=request.job_token, status=ExportStatus.FAILED, error_message=job.error_message
            ))
            raise
        finally:
            with self._lock:
                if self._jobs.get(session_id) is job:
                    del self._jobs[session_id]
                    self._canceled.discard(session_id)

        if not completed:
            job.transition(ExportStatus.CANCELED)
            self.logger.info(f"EXPORT_CANCELED: {request.source.name} token={request.job_token}")
            self._apply_partial_policy(request.output_path)
            self.event_bus.publish(ExportFinished(job_token=request.job_token, status=ExportStatus.CANCELED))
            return ExportResult(
                status=ExportStatus.CANCELED,
                job_token=request.job_token,
                attempts=job.attempts,
                video_bitrate_kbps=job.video_bitrate_kbps,
            )

        job.output_size_bytes = self._output_size(request.output_path)
        job.transition(ExportStatus.SUCCEEDED)
        self.logger.info(
            f"EXPORT_DONE: {request.source.name} token={request.job_token} passes={job.attempts} size={job.output_size_bytes}"
        )
        self.event_bus.publish(ExportFinished(
            job_token=request.job_token,
            status=ExportStatus.SUCCEEDED,
            output_path=request.output_path,
            output_size_bytes=job.output_size_bytes,
        ))
        return ExportResult(
            status=ExportStatus.SUCCEEDED,
            job_token=request.job_token,
            output_path=request.output_path,
            output_size_bytes=job.output_size_bytes,
            attempts=job.attempts,
            video_bitrate_kbps=job.video_bitrate_kbps,
        )

    def _encode_to_size(self, job: ExportJob, num_audio: int, on_progress: Optional[ProgressHandler]) -> bool:
        """Encodes, then re-encodes at a shrinking bitrate while the file overshoots.

        Gives up after ``max_size_retries`` extra passes and keeps the last
        output even when it is still over budget.
        """
        request = job.request
        target_mb = request.target_size_mb or self.config.default_target_mb
        target_bytes = int(target_mb * MEGABYTE)
        kbps = initial_video_bitrate_kbps(
            target_mb * MEGABYTE,
            request.duration,
            safety_ratio=self.config.safety_ratio,
            audio_bitrate_kbps=self.config.audio_bitrate_kbps,
            min_kbps=self.config.min_video_bitrate_kbps,
        )

        if not self._encode_once(job, num_audio, kbps, on_progress):
            return False

        try:
            size = request.output_path.stat().st_size
            retries = 0
            while size > target_bytes and retries < self.config.max_size_retries:
                retries += 1
                kbps = shrink_bitrate_kbps(kbps, self.config.shrink_factor, self.config.min_video_bitrate_kbps)
                self.logger.info(
                    f"EXPORT_RETRY: {request.source.name} size={size} target={target_bytes} next_bitrate={kbps}k"
                )
                self.event_bus.publish(ExportRetry(
                    job_token=request.job_token,
                    attempt=job.attempts + 1,
                    previous_size_bytes=size,
                    target_size_bytes=target_bytes,
                    video_bitrate_kbps=kbps,
                ))
                self.housekeeping.remove_file(request.output_path)
                if not self._encode_once(job, num_audio, kbps, on_progress):
                    return False
                size = request.output_path.stat().st_size
            if size > target_bytes:
                self.logger.warning(f"EXPORT_OVER_BUDGET: {request.source.name} size={size} target={target_bytes}")
        except OSError as exc:
            self.logger.warning(f"Could not validate/adjust output size: {exc}")
        return True

    def _encode_once(self, job: ExportJob, num_audio: int, video_bitrate_kbps: Optional[int], on_progress: Optional[ProgressHandler]) -> bool:
        """One ffmpeg pass. Returns False when the pass was canceled."""
        request = job.request
        session_id = job.session_id
        if self._consume_cancel(session_id):
            return False

        job.attempts += 1
        job.video_bitrate_kbps = video_bitrate_kbps
        attempt = job.attempts
        plan = build_plan(request, num_audio, self.config, video_bitrate_kbps)
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        holder: Dict[str, subprocess.Popen] = {}

        def _on_start(process: subprocess.Popen):
            holder["process"] = process
            with self._lock:
                self._active[session_id] = process
                cancel_pending = session_id in self._canceled
            if cancel_pending:
                self.ffmpeg_adapter.kill(process)

        def _on_progress(percent: float, seconds: float):
            event = ExportProgressUpdated(
                job_token=request.job_token,
                percent=percent,
                timemark=seconds,
                attempt=attempt,
                video_bitrate_kbps=video_bitrate_kbps,
            )
            self.event_bus.publish(event)
            if on_progress:
                on_progress(event)

        self.logger.info(
            f"FFMPEG_START: {request.source.name} token={request.job_token} attempt={attempt} bitrate={video_bitrate_kbps}"
        )
        try:
            outcome = self.ffmpeg_adapter.run(
                plan.to_args(), duration=request.duration, on_progress=_on_progress, on_start=_on_start
            )
        finally:
            with self._lock:
                if self._active.get(session_id) is holder.get("process"):
                    self._active.pop(session_id, None)

        if outcome.returncode == 0:
            return True

        was_canceled = self._consume_cancel(session_id) or bool(CANCEL_PATTERN.search(outcome.message))
        if was_canceled:
            return False

        details = "\n".join(outcome.tail)
        raise ExportError(f"Export failed: {outcome.message}\n{details}")

    def _output_size(self, path: Path) -> Optional[int]:
        try:
            return path.stat().st_size
        except OSError:
            return None

    def _apply_partial_policy(self, output_path: Path):
        if self.config.partial_output_policy == "delete" and self.housekeeping.remove_file(output_path):
            self.logger.info(f"EXPORT_PARTIAL_REMOVED: {output_path}")

"""Request/response surface consumed by the library and editor UI.

ClipEngine wires the adapters, the bounded queue, the artifact cache, the
export pipeline and the folder watcher together, and owns all of their
state. Out-of-band notifications (export progress, file added/removed)
are published on the EventBus the engine was created with.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from clipfolio.config.models import AppConfig
from clipfolio.domain.models import (
    ArtifactKind,
    AudioMode,
    AudioTrackConfig,
    ExportRequest,
    ExportResult,
    OutputKind,
    QualityMode,
    ThumbnailOptions,
    VideoEntry,
)
from clipfolio.infrastructure.event_bus import EventBus
from clipfolio.infrastructure.ffmpeg import FFmpegAdapter
from clipfolio.infrastructure.ffprobe import FFprobeAdapter
from clipfolio.infrastructure.file_scanner import FileScanner, stat_source, to_entry
from clipfolio.infrastructure.housekeeping import HousekeepingService
from clipfolio.infrastructure.task_queue import BoundedTaskQueue
from clipfolio.pipeline.artifact_cache import ArtifactCache
from clipfolio.pipeline.exporter import ExportPipeline, ProgressHandler
from clipfolio.pipeline.folder_watch import FolderWatcher

AudioTracksArg = Union[Dict[int, Any], Iterable[Dict[str, Any]], None]


def normalize_audio_tracks(audio_tracks: AudioTracksArg) -> Dict[int, AudioTrackConfig]:
    """Accepts ``{index: config}`` or a list of ``{"index", "volume", "muted"}`` rows."""
    if not audio_tracks:
        return {}
    if isinstance(audio_tracks, dict):
        return {
            int(index): value if isinstance(value, AudioTrackConfig) else AudioTrackConfig(**value)
            for index, value in audio_tracks.items()
        }
    tracks: Dict[int, AudioTrackConfig] = {}
    for row in audio_tracks:
        row = dict(row)
        index = int(row.pop("index"))
        tracks[index] = AudioTrackConfig(**row)
    return tracks


class ClipEngine:
    """Background processing layer: cached media derivatives, exports and folder watching."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        event_bus: Optional[EventBus] = None,
        ffprobe_adapter: Optional[FFprobeAdapter] = None,
        ffmpeg_adapter: Optional[FFmpegAdapter] = None,
        task_queue: Optional[BoundedTaskQueue] = None,
        folder_watcher: Optional[FolderWatcher] = None,
    ):
        self.config = config or AppConfig()
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

        debug = self.config.general.debug
        self.ffprobe_adapter = ffprobe_adapter or FFprobeAdapter()
        self.ffmpeg_adapter = ffmpeg_adapter or FFmpegAdapter(debug=debug)
        self.housekeeping = HousekeepingService()
        self.scanner = FileScanner(self.config.general.extensions)
        self.task_queue = task_queue or BoundedTaskQueue(self.config.general.threads)

        self.cache = ArtifactCache(
            self.config.cache,
            self.task_queue,
            self.ffprobe_adapter,
            self.ffmpeg_adapter,
            event_bus=self.event_bus,
            housekeeping=self.housekeeping,
        )
        self.exporter = ExportPipeline(
            self.config.export,
            self.ffprobe_adapter,
            self.ffmpeg_adapter,
            self.event_bus,
            housekeeping=self.housekeeping,
        )
        self.watcher = folder_watcher or FolderWatcher(
            self.scanner, self.event_bus, debounce_s=self.config.watch.debounce_s
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.watcher.stop_all()
        self.task_queue.shutdown(wait=False)

    # -- library ------------------------------------------------------------

    def scan_videos(self, folder_path: Path) -> List[VideoEntry]:
        entries = self.scanner.scan_all(Path(folder_path))
        self.logger.info(f"SCAN: {folder_path} videos={len(entries)}")
        return entries

    def file_stats(self, file_path: Path) -> VideoEntry:
        """Stats one file, relative to the watched root that contains it."""
        file_path = Path(file_path).resolve()
        return to_entry(stat_source(file_path), self.watcher.root_for(file_path))

    # -- cached derivatives -------------------------------------------------

    def probe_metadata(self, path: Path, cached: bool = True) -> Dict[str, Any]:
        return self.cache.probe_metadata(Path(path), cached=cached)

    def thumbnail(
        self,
        path: Path,
        timestamp: Optional[float] = None,
        duration: Optional[float] = None,
        trim_start: Optional[float] = None,
        trim_end: Optional[float] = None,
        force_refresh: bool = False,
        high_priority: bool = False,
    ) -> Path:
        options = ThumbnailOptions(timestamp=timestamp, duration=duration, trim_start=trim_start, trim_end=trim_end)
        return self.cache.thumbnail(Path(path), options, force_refresh=force_refresh, high_priority=high_priority)

    def preload_thumbnails(self, paths: Iterable[Path]):
        return self.cache.preload([Path(p) for p in paths], ArtifactKind.THUMBNAIL)

    def extracted_audio(self, path: Path, force_refresh: bool = False) -> List[Path]:
        return self.cache.extracted_audio(Path(path), force_refresh=force_refresh)

    def timeline_thumbnails(self, path: Path, count: int = 10, force_refresh: bool = False) -> List[Path]:
        return self.cache.timeline_thumbnails(Path(path), count=count, force_refresh=force_refresh)

    def clear_cache(self, kind: Optional[ArtifactKind] = None):
        self.cache.clear(kind)

    def prune_cache(self, max_bytes: int) -> List[Path]:
        return self.housekeeping.prune(Path(self.config.cache.root), max_bytes)

    # -- export -------------------------------------------------------------

    def export(
        self,
        path: Path,
        output_path: Path,
        trim_start: float,
        trim_end: float,
        quality: Union[QualityMode, str] = QualityMode.PASSTHROUGH,
        audio_tracks: AudioTracksArg = None,
        target_size_mb: Optional[float] = None,
        job_token: Optional[str] = None,
        audio_mode: Union[AudioMode, str] = AudioMode.COMBINE,
        output_kind: Union[OutputKind, str] = OutputKind.VIDEO,
        session_id: str = "default",
        on_progress: Optional[ProgressHandler] = None,
    ) -> ExportResult:
        request = ExportRequest(
            source=Path(path),
            output_path=Path(output_path),
            trim_start=trim_start,
            trim_end=trim_end,
            quality=QualityMode(quality),
            audio_tracks=normalize_audio_tracks(audio_tracks),
            target_size_mb=target_size_mb,
            job_token=job_token or uuid.uuid4().hex,
            audio_mode=AudioMode(audio_mode),
            output_kind=OutputKind(output_kind),
        )
        return self.exporter.export(request, session_id=session_id, on_progress=on_progress)

    def cancel_export(self, session_id: str = "default") -> bool:
        return self.exporter.cancel(session_id)

    # -- folder watch -------------------------------------------------------

    def watch_folder(self, path: Path):
        self.watcher.watch(Path(path))

    def unwatch_folder(self, path: Path) -> bool:
        return self.watcher.unwatch(Path(path))

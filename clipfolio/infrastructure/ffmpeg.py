import subprocess
import re
import logging
import signal
import time
import threading
import queue
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from clipfolio.domain.errors import EngineError

# Regex to parse 'time=00:00:00.00' from ffmpeg output
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")

ProgressCallback = Callable[[float, float], None]


@dataclass
class ProcessOutcome:
    returncode: int
    tail: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return describe_exit(self.returncode)


def describe_exit(returncode: Optional[int]) -> str:
    """Human-readable exit reason; negative codes are POSIX signal deaths."""
    if returncode is None:
        return "ffmpeg did not exit"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return f"ffmpeg was killed with {name}"
    return f"ffmpeg exited with code {returncode}"


def parse_timemark(line: str) -> Optional[float]:
    match = TIME_REGEX.search(line)
    if not match:
        return None
    h, m, s = map(float, match.groups())
    return h * 3600 + m * 60 + s


class FFmpegAdapter:
    """Wrapper around ffmpeg for frame grabs, audio extraction and exports."""

    def __init__(self, binary: str = "ffmpeg", debug: bool = False):
        self.binary = binary
        self.debug = debug
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        args: Sequence[str],
        duration: float = 0.0,
        on_progress: Optional[ProgressCallback] = None,
        on_start: Optional[Callable[[subprocess.Popen], None]] = None,
        tail_lines: int = 20,
    ) -> ProcessOutcome:
        """Runs one ffmpeg process to completion, streaming progress.

        ``args`` excludes the binary. ``on_start`` receives the live process
        handle so the caller can kill it; the returned outcome carries the
        exit code and the last lines ffmpeg printed.
        """
        cmd = [self.binary, *args]
        start_time = time.monotonic()
        if self.debug:
            self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            universal_newlines=True,
            bufsize=1
        )
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()
        tail: deque = deque(maxlen=tail_lines)

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        try:
            if on_start:
                on_start(process)

            reader_thread = threading.Thread(target=_reader, daemon=True)
            reader_thread.start()

            while True:
                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    if process.poll() is not None and not reader_thread.is_alive():
                        break
                    continue

                if line is None:
                    break

                tail.append(line.rstrip())
                seconds = parse_timemark(line)
                if seconds is not None and on_progress and duration > 0:
                    on_progress(min(100.0, (seconds / duration) * 100.0), seconds)
        except BaseException:
            # callers drop the handle once run() raises
            self.logger.error(f"FFMPEG_ABORT: killing pid={process.pid}")
            self.kill(process)
            process.wait()
            raise

        process.wait()
        outcome = ProcessOutcome(returncode=process.returncode, tail=list(tail))
        self.logger.info(
            f"FFMPEG_END: code={outcome.returncode} elapsed={time.monotonic() - start_time:.2f}s"
        )
        return outcome

    @staticmethod
    def kill(process: subprocess.Popen):
        if process.poll() is None:
            process.kill()

    def extract_frame(self, source: Path, output: Path, timestamp: float, width: int, height: int) -> Path:
        """Grabs a single frame at ``timestamp`` seconds into a fixed-size image."""
        cmd = [
            self.binary, "-y", "-v", "error",
            "-ss", f"{max(0.0, timestamp):.3f}",
            "-i", str(source),
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}",
            "-q:v", "2",
            str(output),
        ]
        if self.debug:
            self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise EngineError(
                f"Frame extraction failed for {source.name}: {describe_exit(result.returncode)}",
                returncode=result.returncode,
                stderr_tail=(result.stderr or "")[-2000:],
            )
        return output

    def _audio_track_command(self, source: Path, index: int, output: Path, sample_rate: int, channels: int) -> List[str]:
        return [
            self.binary, "-y", "-v", "error", "-nostats",
            "-i", str(source),
            "-map", f"0:a:{index}",
            "-acodec", "pcm_s16le",
            "-ar", str(sample_rate),
            "-ac", str(channels),
            str(output),
        ]

    def extract_audio_tracks(
        self,
        source: Path,
        outputs: Sequence[Path],
        sample_rate: int = 48000,
        channels: int = 2,
        timeout_s: float = 30.0,
    ) -> List[Path]:
        """Decodes every audio stream to PCM WAV, one OS process per stream.

        All processes run side by side; each gets ``timeout_s`` from its own
        start. The first failure or timeout kills the remaining processes and
        raises EngineError; removing partial output is left to the caller.
        """
        processes: List[subprocess.Popen] = []
        deadlines: List[float] = []
        try:
            for index, output in enumerate(outputs):
                cmd = self._audio_track_command(source, index, output, sample_rate, channels)
                self.logger.info(f"AUDIO_EXTRACT_START: {source.name} track={index}")
                if self.debug:
                    self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
                processes.append(subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True))
                deadlines.append(time.monotonic() + timeout_s)

            for index, process in enumerate(processes):
                remaining = max(0.0, deadlines[index] - time.monotonic())
                try:
                    _, stderr = process.communicate(timeout=remaining)
                except subprocess.TimeoutExpired:
                    self.logger.error(f"AUDIO_EXTRACT_TIMEOUT: {source.name} track={index}")
                    raise EngineError(f"Audio extraction timed out on track {index}", returncode=None)
                if process.returncode != 0:
                    self.logger.error(f"AUDIO_EXTRACT_FAILED: {source.name} track={index} ({(stderr or '').strip()})")
                    raise EngineError(
                        f"Audio extraction failed on track {index}: {describe_exit(process.returncode)}",
                        returncode=process.returncode,
                        stderr_tail=(stderr or "")[-2000:],
                    )
                self.logger.info(f"AUDIO_EXTRACT_DONE: {source.name} track={index} ({index + 1}/{len(processes)})")
        except BaseException:
            for process in processes:
                self.kill(process)
                process.wait()
            raise
        return list(outputs)

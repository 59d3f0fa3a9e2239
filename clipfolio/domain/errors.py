"""Error taxonomy for the cache and export layers.

Plain I/O failures (missing source, permission denied) are raised as the
builtin OSError subclasses and are not wrapped here. Export cancellation is
never an exception: it settles as ``ExportResult(status=CANCELED)``.
"""

from typing import Optional


class ClipfolioError(Exception):
    """Base class for all clipfolio failures."""


class MediaProbeError(ClipfolioError):
    """ffprobe failed or returned output that could not be parsed."""


class EngineError(ClipfolioError):
    """ffmpeg exited with a nonzero status."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class ArtifactGenerationError(ClipfolioError):
    """A generation step finished but left missing, empty or partial output."""


class ExportError(ClipfolioError):
    """Invalid export request or an encode that failed for a reason other than cancellation."""

"""Domain events for the cache, export and watch layers.

Events flow through the EventBus so the UI layer never talks to the
pipeline directly. Export events carry the caller's job token; a caller that
superseded a job filters stale events by token at subscription time.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
from .models import ArtifactKind, ExportStatus


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class ExportEvent(Event):
    """Base class for events tied to one export job."""

    job_token: str


class ExportStarted(ExportEvent):
    """Emitted once when the job starts its first encode pass."""

    source: Path
    output_path: Path


class ExportProgressUpdated(ExportEvent):
    """Emitted as ffmpeg reports its position within the trim window."""

    percent: float
    timemark: float = 0.0
    attempt: int = 1
    video_bitrate_kbps: Optional[int] = None


class ExportRetry(ExportEvent):
    """Emitted when a size-targeted pass overshot and will be re-encoded."""

    attempt: int
    previous_size_bytes: int
    target_size_bytes: int
    video_bitrate_kbps: int


class ExportFinished(ExportEvent):
    """Emitted when the job settles: succeeded, canceled or failed."""

    status: ExportStatus
    output_path: Optional[Path] = None
    output_size_bytes: Optional[int] = None
    error_message: Optional[str] = None


class FileEvent(Event):
    file_path: Path
    root: Path


class FileAdded(FileEvent):
    """A video appeared under a watched root and is non-empty."""

    pass


class FileRemoved(FileEvent):
    """A previously known video disappeared from a watched root."""

    pass


class ArtifactGenerated(Event):
    """Emitted after a cache miss produced a valid artifact."""

    kind: ArtifactKind
    source: Path
    paths: List[Path] = Field(default_factory=list)

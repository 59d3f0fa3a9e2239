from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional
from pydantic import BaseModel, Field, model_validator


class ArtifactKind(str, Enum):
    METADATA = "metadata"
    THUMBNAIL = "thumbnail"
    EXTRACTED_AUDIO = "extracted-audio"
    TIMELINE = "timeline"


class QualityMode(str, Enum):
    PASSTHROUGH = "passthrough"
    SIZE_TARGETED = "size-targeted"


class AudioMode(str, Enum):
    COMBINE = "combine"
    SEPARATE = "separate"


class OutputKind(str, Enum):
    VIDEO = "video"
    AUDIO_ONLY = "audio-only"


class ExportStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.SUCCEEDED, ExportStatus.CANCELED, ExportStatus.FAILED)


class SourceFile(BaseModel):
    path: Path
    size_bytes: int
    modified: datetime
    created: datetime


class VideoEntry(BaseModel):
    """One row of a folder scan, relative to the scanned root."""
    name: str
    path: Path
    size: int
    created: datetime
    modified: datetime
    relative_path: str
    folder_path: str


class CacheFingerprint(BaseModel):
    source: Path
    digest: str
    from_stat: bool = True

    def artifact_stem(self) -> str:
        return f"{self.source.stem}-{self.digest}"


class ThumbnailOptions(BaseModel):
    timestamp: Optional[float] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, gt=0)
    trim_start: Optional[float] = Field(default=None, ge=0)
    trim_end: Optional[float] = Field(default=None, ge=0)


class AudioTrackConfig(BaseModel):
    volume: float = Field(default=1.0, ge=0.0)
    muted: bool = False

    @property
    def effective_volume(self) -> float:
        return 0.0 if self.muted else self.volume


class ExportRequest(BaseModel):
    source: Path
    output_path: Path
    trim_start: float = Field(ge=0)
    trim_end: float
    quality: QualityMode = QualityMode.PASSTHROUGH
    audio_tracks: Dict[int, AudioTrackConfig] = Field(default_factory=dict)
    target_size_mb: Optional[float] = Field(default=None, gt=0)
    job_token: str
    audio_mode: AudioMode = AudioMode.COMBINE
    output_kind: OutputKind = OutputKind.VIDEO

    @model_validator(mode="after")
    def validate_window(self):
        if self.trim_end <= self.trim_start:
            raise ValueError("trim_end must be greater than trim_start")
        return self

    @property
    def duration(self) -> float:
        return self.trim_end - self.trim_start

    def volume_for(self, index: int) -> float:
        track = self.audio_tracks.get(index)
        return track.effective_volume if track else 1.0


class ExportJob(BaseModel):
    request: ExportRequest
    session_id: str = "default"
    status: ExportStatus = ExportStatus.PENDING
    attempts: int = 0
    video_bitrate_kbps: Optional[int] = None
    output_size_bytes: Optional[int] = None
    error_message: Optional[str] = None

    def transition(self, status: ExportStatus) -> None:
        if self.status.is_terminal:
            raise ValueError(f"Export job {self.request.job_token} already settled as {self.status.value}")
        self.status = status


class ExportResult(BaseModel):
    status: ExportStatus
    job_token: str
    output_path: Optional[Path] = None
    output_size_bytes: Optional[int] = None
    attempts: int = 0
    video_bitrate_kbps: Optional[int] = None

    @property
    def canceled(self) -> bool:
        return self.status == ExportStatus.CANCELED

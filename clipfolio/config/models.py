import tempfile
from pathlib import Path
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, field_validator


def _default_cache_root() -> Path:
    return Path(tempfile.gettempdir()) / "clipfolio"


class GeneralConfig(BaseModel):
    threads: int = Field(default=6, gt=0)
    extensions: List[str] = Field(
        default_factory=lambda: [".mp4", ".avi", ".mov", ".mkv", ".webm", ".flv", ".wmv"]
    )
    debug: bool = False
    log_path: Optional[str] = None

    @field_validator("threads", mode="before")
    @classmethod
    def coerce_threads(cls, v):
        # Fractional or sub-1 values collapse to a single worker
        try:
            return max(1, int(v))
        except (TypeError, ValueError):
            return 1

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]


class CacheConfig(BaseModel):
    """Layout and generation parameters for derived artifacts."""
    root: Path = Field(default_factory=_default_cache_root)
    fingerprint_length: int = Field(default=16, ge=8, le=40)
    thumbnail_width: int = Field(default=960, gt=0)
    thumbnail_height: int = Field(default=540, gt=0)
    thumbnail_position_pct: float = Field(default=0.10, ge=0.0, le=1.0)
    timeline_width: int = Field(default=160, gt=0)
    timeline_height: int = Field(default=90, gt=0)
    sample_rate: int = Field(default=48000, gt=0)
    channels: int = Field(default=2, gt=0)
    track_timeout_s: float = Field(default=30.0, gt=0)
    max_bytes: Optional[int] = Field(default=None, gt=0)

    @field_validator("root", mode="before")
    @classmethod
    def reject_empty_root(cls, v):
        if v is None or str(v).strip() == "":
            raise ValueError("cache.root cannot be empty")
        return v


class ExportConfig(BaseModel):
    safety_ratio: float = Field(default=0.92, gt=0.0, le=1.0)
    audio_bitrate_kbps: int = Field(default=128, ge=0)
    min_video_bitrate_kbps: int = Field(default=100, gt=0)
    shrink_factor: float = Field(default=0.85, gt=0.0, lt=1.0)
    max_size_retries: int = Field(default=2, ge=0)
    default_target_mb: float = Field(default=10.0, gt=0)
    audio_only_bitrate_kbps: int = Field(default=192, gt=0)
    passthrough_audio_bitrate_kbps: int = Field(default=192, gt=0)
    video_codec: str = "libx264"
    preset: str = "fast"
    partial_output_policy: Literal["keep", "delete"] = "keep"


class WatchConfig(BaseModel):
    debounce_ms: int = Field(default=500, ge=0)

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)

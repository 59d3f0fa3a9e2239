import subprocess
import json
from pathlib import Path
from typing import Dict, Any, List, Optional

from clipfolio.domain.errors import MediaProbeError


def as_seconds(value: Any) -> float:
    """Parses ``12.5``, ``MM:SS(.f)`` or ``HH:MM:SS(.f)``; anything else is 0."""
    text = str(value).strip() if value is not None else ""
    if not text:
        return 0.0
    parts = text.split(":")
    if len(parts) > 3:
        return 0.0
    total = 0.0
    try:
        for part in parts:
            total = total * 60 + float(part)
    except ValueError:
        return 0.0
    return max(total, 0.0)


def ratio(text: Any) -> float:
    """``"1/90000"`` -> 1.1e-05; a zero or missing denominator gives 0."""
    num, _, den = str(text or "").partition("/")
    try:
        return float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return 0.0


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, binary: str = "ffprobe"):
        self.binary = binary

    def probe(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and returns its raw JSON document."""
        cmd = [
            self.binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise MediaProbeError(f"ffprobe not available: {exc}") from exc
        if result.returncode != 0:
            raise MediaProbeError(f"ffprobe failed for {file_path}: {result.stderr}")

        try:
            data = json.loads(result.stdout)
        except (TypeError, ValueError) as exc:
            raise MediaProbeError(f"ffprobe returned malformed JSON for {file_path}") from exc
        if not isinstance(data, dict):
            raise MediaProbeError(f"ffprobe returned unexpected output for {file_path}")
        data.setdefault("streams", [])
        data.setdefault("format", {})
        return data

    @staticmethod
    def audio_streams(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [s for s in data.get("streams", []) or [] if s.get("codec_type") == "audio"]

    @staticmethod
    def video_stream(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return next((s for s in data.get("streams", []) or [] if s.get("codec_type") == "video"), None)

    @classmethod
    def duration_of(cls, data: Dict[str, Any]) -> float:
        """Best-effort duration in seconds; 0.0 when nothing usable is reported.

        Containers like MKV often omit format.duration and only carry a
        ``DURATION`` tag, so each source is tried in turn.
        """
        fmt = data.get("format", {}) or {}
        stream = cls.video_stream(data) or next(iter(data.get("streams", []) or []), {})
        fmt_tags = fmt.get("tags", {}) or {}
        stream_tags = stream.get("tags", {}) or {}

        candidates = (
            lambda: as_seconds(fmt.get("duration")),
            lambda: as_seconds(fmt_tags.get("DURATION") or fmt_tags.get("duration")),
            lambda: as_seconds(stream.get("duration")),
            lambda: as_seconds(stream_tags.get("DURATION") or stream_tags.get("duration")),
            lambda: as_seconds(stream.get("duration_ts")) * ratio(stream.get("time_base")),
        )
        for candidate in candidates:
            duration = candidate()
            if duration > 0:
                return duration

        bit_rate = as_seconds(fmt.get("bit_rate") or stream.get("bit_rate"))
        size = as_seconds(fmt.get("size"))
        if bit_rate > 0 and size > 0:
            return (size * 8) / bit_rate
        return 0.0

    @classmethod
    def summarize(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        video_stream = cls.video_stream(data) or {}
        # r_frame_rate is often the timebase; anything above 240 is treated as bogus
        fps = ratio(video_stream.get("avg_frame_rate", "0/0"))
        fps = round(fps, 3) if 0 < fps <= 240 else 0.0

        return {
            "width": int(video_stream.get("width", 0) or 0),
            "height": int(video_stream.get("height", 0) or 0),
            "codec": video_stream.get("codec_name", "unknown"),
            "fps": fps,
            "duration": cls.duration_of(data),
            "audio_streams": len(cls.audio_streams(data)),
        }

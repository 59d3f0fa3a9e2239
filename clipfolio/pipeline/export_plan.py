"""ffmpeg argument planning for trimmed, remixed exports."""

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from clipfolio.config.models import ExportConfig
from clipfolio.domain.models import AudioMode, ExportRequest, OutputKind, QualityMode

UNIT_GAIN_TOLERANCE = 1e-6


def _format_number(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"


def _format_volume(value: float) -> str:
    return f"{value:g}"


def initial_video_bitrate_kbps(
    target_bytes: float,
    duration_s: float,
    safety_ratio: float = 0.92,
    audio_bitrate_kbps: int = 128,
    min_kbps: int = 100,
) -> int:
    """Video bitrate that should land the whole file under ``target_bytes``."""
    if duration_s <= 0:
        raise ValueError("Export duration must be positive")
    target_bits = max(1, math.floor(target_bytes * safety_ratio * 8))
    return max(min_kbps, math.floor(target_bits / duration_s / 1000) - audio_bitrate_kbps)


def shrink_bitrate_kbps(current_kbps: int, factor: float = 0.85, min_kbps: int = 100) -> int:
    return max(min_kbps, math.floor(current_kbps * factor))


def build_audio_graph(
    num_audio_streams: int,
    volume_for: Callable[[int], float],
    audio_mode: AudioMode,
    output_kind: OutputKind,
) -> Tuple[List[str], List[str]]:
    """Returns (filter_complex parts, -map options) for the audio layout.

    Audio-only output always combines. Streams at unit gain skip the
    volume filter; a lone unit-gain stream is mapped straight through.
    """
    filter_parts: List[str] = []
    map_options: List[str] = []

    if output_kind == OutputKind.VIDEO:
        map_options.extend(["-map", "0:v:0"])
    else:
        map_options.append("-vn")

    if num_audio_streams <= 0:
        return filter_parts, map_options

    combine = output_kind == OutputKind.AUDIO_ONLY or audio_mode == AudioMode.COMBINE

    if combine:
        input_labels: List[str] = []
        for i in range(num_audio_streams):
            vol = volume_for(i)
            if abs(vol - 1.0) > UNIT_GAIN_TOLERANCE:
                filter_parts.append(f"[0:a:{i}]volume={_format_volume(vol)}[a{i}]")
                input_labels.append(f"[a{i}]")
            else:
                input_labels.append(f"[0:a:{i}]")
        if input_labels == ["[0:a:0]"]:
            map_options.extend(["-map", "0:a:0"])
        else:
            filter_parts.append(f"{''.join(input_labels)}amix=inputs={len(input_labels)}:duration=longest[aout]")
            map_options.extend(["-map", "[aout]"])
    else:
        for i in range(num_audio_streams):
            vol = volume_for(i)
            if abs(vol - 1.0) > UNIT_GAIN_TOLERANCE:
                filter_parts.append(f"[0:a:{i}]volume={_format_volume(vol)}[a{i}]")
                map_options.extend(["-map", f"[a{i}]"])
            else:
                map_options.extend(["-map", f"0:a:{i}"])

    return filter_parts, map_options


def build_codec_options(request: ExportRequest, config: ExportConfig, video_bitrate_kbps: Optional[int]) -> List[str]:
    if request.output_kind == OutputKind.AUDIO_ONLY:
        return ["-c:a", "libmp3lame", "-b:a", f"{config.audio_only_bitrate_kbps}k"]

    if request.quality == QualityMode.SIZE_TARGETED:
        kbps = video_bitrate_kbps or 800
        return [
            "-c:v", config.video_codec,
            "-c:a", "aac",
            "-preset", config.preset,
            "-b:v", f"{kbps}k",
            "-maxrate", f"{max(100, math.floor(kbps * 1.05))}k",
            "-bufsize", f"{max(200, math.floor(kbps * 2))}k",
            "-b:a", f"{config.audio_bitrate_kbps}k",
            "-movflags", "+faststart",
        ]

    return [
        "-c:v", "copy",
        "-c:a", "aac",
        "-b:a", f"{config.passthrough_audio_bitrate_kbps}k",
        "-movflags", "+faststart",
    ]


@dataclass
class ExportPlan:
    request: ExportRequest
    filter_parts: List[str] = field(default_factory=list)
    map_options: List[str] = field(default_factory=list)
    codec_options: List[str] = field(default_factory=list)
    video_bitrate_kbps: Optional[int] = None

    @property
    def filter_complex(self) -> Optional[str]:
        return ";".join(self.filter_parts) if self.filter_parts else None

    def to_args(self) -> List[str]:
        """ffmpeg arguments (without the binary) for one encode pass."""
        args = [
            "-y", "-nostdin",
            "-ss", _format_number(self.request.trim_start),
            "-i", str(self.request.source),
            "-t", _format_number(self.request.duration),
        ]
        if self.filter_complex:
            args.extend(["-filter_complex", self.filter_complex])
        args.extend(self.map_options)
        args.extend(self.codec_options)
        args.append(str(self.request.output_path))
        return args


def build_plan(
    request: ExportRequest,
    num_audio_streams: int,
    config: ExportConfig,
    video_bitrate_kbps: Optional[int] = None,
) -> ExportPlan:
    filter_parts, map_options = build_audio_graph(
        num_audio_streams, request.volume_for, request.audio_mode, request.output_kind
    )
    return ExportPlan(
        request=request,
        filter_parts=filter_parts,
        map_options=map_options,
        codec_options=build_codec_options(request, config, video_bitrate_kbps),
        video_bitrate_kbps=video_bitrate_kbps,
    )

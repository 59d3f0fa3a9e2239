"""Fingerprinted, single-flight disk cache for derived media artifacts.

Turns "give me artifact K for file F" into at most one expensive generation
per (fingerprint, kind). Artifacts live under one directory per kind inside
the cache root, named ``<source stem>-<fingerprint>`` so they can be traced
back to their source by eye:

    <root>/metadata/<stem>-<fp>.json          raw ffprobe document
    <root>/thumbnails/<stem>-<fp>.jpg         single poster frame
    <root>/extracted-audio/<stem>-<fp>/       audio_track_<i>.wav + manifest.json
    <root>/timeline/<stem>-<fp>/              thumb-<i>.png + manifest.json

Multi-file artifacts are only valid when their manifest exists and every
file it lists is present and non-empty; the manifest is written last.

Lookup order for ``resolve``: in-memory mirror, then a valid artifact on
disk (both answered without a queue hop), then an in-flight generation for
the same key, and finally a new generation on the BoundedTaskQueue. The
check and the in-flight registration happen under one lock, so two callers
can never both start a generation for the same key. Failed generations are
not remembered; the next request simply tries again.
"""

import json
import logging
import os
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from clipfolio.config.models import CacheConfig
from clipfolio.domain.errors import ArtifactGenerationError
from clipfolio.domain.events import ArtifactGenerated
from clipfolio.domain.models import ArtifactKind, CacheFingerprint, ThumbnailOptions
from clipfolio.infrastructure.event_bus import EventBus
from clipfolio.infrastructure.ffmpeg import FFmpegAdapter
from clipfolio.infrastructure.ffprobe import FFprobeAdapter
from clipfolio.infrastructure.fingerprint import compute_fingerprint
from clipfolio.infrastructure.housekeeping import HousekeepingService
from clipfolio.infrastructure.task_queue import BoundedTaskQueue

ArtifactValue = Union[Path, List[Path]]
CacheKey = Tuple[str, ArtifactKind]

KIND_DIRS: Dict[ArtifactKind, str] = {
    ArtifactKind.METADATA: "metadata",
    ArtifactKind.THUMBNAIL: "thumbnails",
    ArtifactKind.EXTRACTED_AUDIO: "extracted-audio",
    ArtifactKind.TIMELINE: "timeline",
}

MANIFEST_NAME = "manifest.json"


def _completed(value: Any) -> Future:
    future: Future = Future()
    future.set_result(value)
    return future


class ArtifactCache:
    """Single-flight resolver for probe metadata, thumbnails, extracted audio and timeline strips."""

    def __init__(
        self,
        config: CacheConfig,
        task_queue: BoundedTaskQueue,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: Optional[EventBus] = None,
        housekeeping: Optional[HousekeepingService] = None,
    ):
        self.config = config
        self.task_queue = task_queue
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus
        self.housekeeping = housekeeping or HousekeepingService()
        self.logger = logging.getLogger(__name__)

        self._memory: Dict[CacheKey, ArtifactValue] = {}
        self._in_flight: Dict[CacheKey, Future] = {}
        self._high_priority: set = set()
        self._lock = threading.Lock()

        self._generators: Dict[ArtifactKind, Callable[[CacheFingerprint, Dict[str, Any]], ArtifactValue]] = {
            ArtifactKind.METADATA: self._generate_metadata,
            ArtifactKind.THUMBNAIL: self._generate_thumbnail,
            ArtifactKind.EXTRACTED_AUDIO: self._generate_extracted_audio,
            ArtifactKind.TIMELINE: self._generate_timeline,
        }

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def kind_dir(self, kind: ArtifactKind) -> Path:
        return Path(self.config.root) / KIND_DIRS[kind]

    def fingerprint(self, path: Path) -> CacheFingerprint:
        return compute_fingerprint(Path(path), self.config.fingerprint_length)

    def artifact_location(self, fp: CacheFingerprint, kind: ArtifactKind) -> Path:
        stem = fp.artifact_stem()
        if kind == ArtifactKind.METADATA:
            return self.kind_dir(kind) / f"{stem}.json"
        if kind == ArtifactKind.THUMBNAIL:
            return self.kind_dir(kind) / f"{stem}.jpg"
        return self.kind_dir(kind) / stem

    # ------------------------------------------------------------------
    # Validity checks
    # ------------------------------------------------------------------

    @staticmethod
    def _is_valid_file(path: Path) -> bool:
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def _read_manifest(self, directory: Path) -> Optional[List[Path]]:
        manifest = directory / MANIFEST_NAME
        try:
            with open(manifest, "r") as f:
                names = json.load(f).get("files", [])
        except (OSError, ValueError, AttributeError):
            return None
        files = [directory / name for name in names]
        if not all(self._is_valid_file(p) for p in files):
            return None
        return files

    def _write_manifest(self, directory: Path, files: List[Path], **extra):
        payload = {"files": [p.name for p in files], **extra}
        tmp = directory / f"{MANIFEST_NAME}.tmp"
        with open(tmp, "w") as f:
            json.dump(payload, f)
        os.replace(tmp, directory / MANIFEST_NAME)

    def _existing(self, fp: CacheFingerprint, kind: ArtifactKind) -> Optional[ArtifactValue]:
        location = self.artifact_location(fp, kind)
        if kind in (ArtifactKind.METADATA, ArtifactKind.THUMBNAIL):
            return location if self._is_valid_file(location) else None
        return self._read_manifest(location)

    def _still_valid(self, value: ArtifactValue) -> bool:
        if isinstance(value, list):
            return all(self._is_valid_file(p) for p in value)
        return self._is_valid_file(value)

    def _discard(self, fp: CacheFingerprint, kind: ArtifactKind):
        location = self.artifact_location(fp, kind)
        if kind in (ArtifactKind.METADATA, ArtifactKind.THUMBNAIL):
            self.housekeeping.remove_file(location)
        else:
            self.housekeeping.clear_directory(location)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        path: Path,
        kind: ArtifactKind,
        force_refresh: bool = False,
        high_priority: bool = False,
        **options: Any,
    ) -> Future:
        """Returns a future for the artifact path (or path list) of ``path``.

        ``force_refresh`` deletes any prior artifact for the key and
        regenerates it. If a generation for the key is already running the
        refresh joins it instead of starting a second one.
        """
        fp = self.fingerprint(path)
        key: CacheKey = (fp.digest, kind)

        if not force_refresh:
            hit = self._lookup(key, fp, kind)
            if hit is not None:
                return _completed(hit)

        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                self.logger.debug(f"CACHE_JOIN: {fp.source.name} kind={kind.value}")
                return in_flight
            if not force_refresh:
                # Another caller may have finished between our lookup and the lock
                remembered = self._memory.get(key)
                if remembered is not None:
                    return _completed(remembered)
            else:
                self._memory.pop(key, None)
            if high_priority:
                self._high_priority.add(key)
            future = self.task_queue.submit(self._generate_and_record, key, fp, kind, force_refresh, options)
            self._in_flight[key] = future

        self.logger.info(f"CACHE_MISS: {fp.source.name} kind={kind.value} refresh={force_refresh}")
        future.add_done_callback(lambda f: self._release(key, f))
        return future

    def _lookup(self, key: CacheKey, fp: CacheFingerprint, kind: ArtifactKind) -> Optional[ArtifactValue]:
        with self._lock:
            remembered = self._memory.get(key)
        if remembered is not None:
            if self._still_valid(remembered):
                return remembered
            with self._lock:
                self._memory.pop(key, None)

        existing = self._existing(fp, kind)
        if existing is not None:
            self.logger.debug(f"CACHE_HIT: {fp.source.name} kind={kind.value}")
            with self._lock:
                self._memory[key] = existing
        return existing

    def _generate_and_record(
        self, key: CacheKey, fp: CacheFingerprint, kind: ArtifactKind, force_refresh: bool, options: Dict[str, Any]
    ) -> ArtifactValue:
        # Bookkeeping happens before the future resolves, so a caller that
        # retries right after a failure never joins the failed generation.
        # Only one generation per key is ever in flight, so the entry is ours.
        try:
            value = self._run_generation(fp, kind, force_refresh, options)
        except Exception:
            with self._lock:
                self._in_flight.pop(key, None)
                self._high_priority.discard(key)
            raise
        with self._lock:
            self._memory[key] = value
            self._in_flight.pop(key, None)
            self._high_priority.discard(key)
        return value

    def _release(self, key: CacheKey, future: Future):
        # Covers futures dropped by a queue shutdown before they ever ran
        with self._lock:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]
                self._high_priority.discard(key)

    def _run_generation(self, fp: CacheFingerprint, kind: ArtifactKind, force_refresh: bool, options: Dict[str, Any]) -> ArtifactValue:
        if force_refresh:
            self._discard(fp, kind)
        value = self._generators[kind](fp, options)
        if not self._still_valid(value):
            self._discard(fp, kind)
            raise ArtifactGenerationError(f"{kind.value} generation for {fp.source.name} produced invalid output")

        paths = value if isinstance(value, list) else [value]
        if self.event_bus:
            self.event_bus.publish(ArtifactGenerated(kind=kind, source=fp.source, paths=paths))
        if self.config.max_bytes:
            self.housekeeping.prune(Path(self.config.root), self.config.max_bytes, keep={self.artifact_location(fp, kind)})
        return value

    def is_high_priority(self, path: Path, kind: ArtifactKind) -> bool:
        key = (self.fingerprint(path).digest, kind)
        with self._lock:
            return key in self._high_priority

    def is_in_flight(self, path: Path, kind: ArtifactKind) -> bool:
        key = (self.fingerprint(path).digest, kind)
        with self._lock:
            return key in self._in_flight

    def preload(self, paths: Iterable[Path], kind: ArtifactKind = ArtifactKind.THUMBNAIL) -> List[Future]:
        """Requests artifacts for items about to become visible, marked high priority."""
        return [self.resolve(p, kind, high_priority=True) for p in paths]

    def forget(self):
        """Drops the in-memory mirror; disk artifacts stay."""
        with self._lock:
            self._memory.clear()

    def clear(self, kind: Optional[ArtifactKind] = None):
        kinds = [kind] if kind else list(KIND_DIRS)
        with self._lock:
            for key in [k for k in self._memory if k[1] in kinds]:
                del self._memory[key]
        for k in kinds:
            self.housekeeping.clear_directory(self.kind_dir(k))
        self.logger.info(f"CACHE_CLEARED: kinds={[k.value for k in kinds]}")

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    def probe_metadata(self, path: Path, cached: bool = True) -> Dict[str, Any]:
        if not cached:
            return self.ffprobe_adapter.probe(Path(path))
        artifact = self.resolve(path, ArtifactKind.METADATA).result()
        with open(artifact, "r") as f:
            return json.load(f)

    def thumbnail(self, path: Path, options: Optional[ThumbnailOptions] = None, force_refresh: bool = False, high_priority: bool = False) -> Path:
        opts = options.model_dump() if options else {}
        return self.resolve(path, ArtifactKind.THUMBNAIL, force_refresh=force_refresh, high_priority=high_priority, **opts).result()

    def extracted_audio(self, path: Path, force_refresh: bool = False) -> List[Path]:
        return self.resolve(path, ArtifactKind.EXTRACTED_AUDIO, force_refresh=force_refresh).result()

    def timeline_thumbnails(self, path: Path, count: int = 10, force_refresh: bool = False) -> List[Path]:
        return self.resolve(path, ArtifactKind.TIMELINE, force_refresh=force_refresh, count=count).result()

    # ------------------------------------------------------------------
    # Generators (run on the task queue)
    # ------------------------------------------------------------------

    def _probe_source(self, fp: CacheFingerprint) -> Dict[str, Any]:
        """Reads the cached probe document when one exists, else probes directly."""
        metadata_path = self.artifact_location(fp, ArtifactKind.METADATA)
        if self._is_valid_file(metadata_path):
            try:
                with open(metadata_path, "r") as f:
                    return json.load(f)
            except (OSError, ValueError):
                pass
        return self.ffprobe_adapter.probe(fp.source)

    def _generate_metadata(self, fp: CacheFingerprint, options: Dict[str, Any]) -> Path:
        data = self.ffprobe_adapter.probe(fp.source)
        target = self.artifact_location(fp, ArtifactKind.METADATA)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f)
        os.replace(tmp, target)
        return target

    def _thumbnail_timestamp(self, fp: CacheFingerprint, options: Dict[str, Any]) -> float:
        opts = ThumbnailOptions(**options)
        if opts.timestamp is not None:
            return opts.timestamp
        if opts.trim_start is not None and opts.trim_end is not None and opts.trim_end > opts.trim_start:
            return (opts.trim_start + opts.trim_end) / 2.0
        duration = opts.duration
        if duration is None:
            duration = self.ffprobe_adapter.duration_of(self._probe_source(fp))
        return max(0.0, duration * self.config.thumbnail_position_pct)

    def _generate_thumbnail(self, fp: CacheFingerprint, options: Dict[str, Any]) -> Path:
        target = self.artifact_location(fp, ArtifactKind.THUMBNAIL)
        target.parent.mkdir(parents=True, exist_ok=True)
        timestamp = self._thumbnail_timestamp(fp, options)
        try:
            self.ffmpeg_adapter.extract_frame(
                fp.source, target, timestamp, self.config.thumbnail_width, self.config.thumbnail_height
            )
        except Exception:
            self.housekeeping.remove_file(target)
            raise
        return target

    def _generate_extracted_audio(self, fp: CacheFingerprint, options: Dict[str, Any]) -> List[Path]:
        directory = self.artifact_location(fp, ArtifactKind.EXTRACTED_AUDIO)
        data = self._probe_source(fp)
        expected = len(self.ffprobe_adapter.audio_streams(data))

        # Leftovers from an earlier interrupted run are never trusted
        self.housekeeping.clear_directory(directory)
        directory.mkdir(parents=True, exist_ok=True)

        outputs = [directory / f"audio_track_{i}.wav" for i in range(expected)]
        if expected:
            try:
                self.ffmpeg_adapter.extract_audio_tracks(
                    fp.source,
                    outputs,
                    sample_rate=self.config.sample_rate,
                    channels=self.config.channels,
                    timeout_s=self.config.track_timeout_s,
                )
            except Exception:
                self.housekeeping.clear_directory(directory)
                raise
            if not all(self._is_valid_file(p) for p in outputs):
                self.housekeeping.clear_directory(directory)
                raise ArtifactGenerationError(f"Audio extraction produced invalid files for {fp.source.name}")

        self._write_manifest(directory, outputs, sample_rate=self.config.sample_rate, channels=self.config.channels)
        self.logger.info(f"AUDIO_EXTRACT_COMPLETE: {fp.source.name} tracks={expected}")
        return outputs

    def _generate_timeline(self, fp: CacheFingerprint, options: Dict[str, Any]) -> List[Path]:
        count = max(1, int(options.get("count", 10)))
        directory = self.artifact_location(fp, ArtifactKind.TIMELINE)
        duration = self.ffprobe_adapter.duration_of(self._probe_source(fp))
        interval = duration / count

        self.housekeeping.clear_directory(directory)
        directory.mkdir(parents=True, exist_ok=True)

        outputs = [directory / f"thumb-{i + 1}.png" for i in range(count)]
        try:
            for i, output in enumerate(outputs):
                self.ffmpeg_adapter.extract_frame(
                    fp.source, output, i * interval, self.config.timeline_width, self.config.timeline_height
                )
        except Exception:
            self.housekeeping.clear_directory(directory)
            raise
        if not all(self._is_valid_file(p) for p in outputs):
            self.housekeeping.clear_directory(directory)
            raise ArtifactGenerationError(f"Timeline thumbnails incomplete for {fp.source.name}")

        self._write_manifest(directory, outputs, count=count)
        return outputs

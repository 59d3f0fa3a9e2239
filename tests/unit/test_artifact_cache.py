import json
import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock
from clipfolio.config.models import CacheConfig
from clipfolio.domain.errors import ArtifactGenerationError, EngineError
from clipfolio.domain.events import ArtifactGenerated
from clipfolio.domain.models import ArtifactKind, ThumbnailOptions
from clipfolio.infrastructure.ffmpeg import FFmpegAdapter
from clipfolio.infrastructure.ffprobe import FFprobeAdapter
from clipfolio.pipeline.artifact_cache import ArtifactCache


def _probe_data(audio_streams=2, duration="20.0"):
    streams = [{"index": 0, "codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080}]
    streams += [{"index": i + 1, "codec_type": "audio", "codec_name": "aac"} for i in range(audio_streams)]
    return {"streams": streams, "format": {"duration": duration}}


def _write_frame(source, output, timestamp, width, height):
    output.write_bytes(b"\xff\xd8jpeg")
    return output


def _write_tracks(source, outputs, sample_rate=48000, channels=2, timeout_s=30.0):
    for output in outputs:
        output.write_bytes(b"RIFFwav")
    return list(outputs)


@pytest.fixture
def ffprobe():
    adapter = FFprobeAdapter()
    adapter.probe = MagicMock(return_value=_probe_data())
    return adapter


@pytest.fixture
def ffmpeg():
    adapter = FFmpegAdapter()
    adapter.extract_frame = MagicMock(side_effect=_write_frame)
    adapter.extract_audio_tracks = MagicMock(side_effect=_write_tracks)
    return adapter


@pytest.fixture
def cache(cache_config, task_queue, ffprobe, ffmpeg, event_bus):
    return ArtifactCache(cache_config, task_queue, ffprobe, ffmpeg, event_bus=event_bus)


@pytest.fixture
def clip(tmp_path):
    path = tmp_path / "library" / "clip.mp4"
    path.parent.mkdir()
    path.write_bytes(b"video" * 100)
    return path


# ============================================================================
# Thumbnails: idempotence and invalidation
# ============================================================================

def test_thumbnail_is_generated_once_then_served_from_cache(cache, ffmpeg, clip, cache_root):
    first = cache.thumbnail(clip)
    second = cache.thumbnail(clip)

    assert first == second
    assert first.parent == cache_root / "thumbnails"
    assert first.name == f"{cache.fingerprint(clip).artifact_stem()}.jpg"
    assert ffmpeg.extract_frame.call_count == 1


def test_valid_artifact_on_disk_is_reused_by_a_fresh_cache(cache_config, task_queue, ffprobe, ffmpeg, clip):
    ArtifactCache(cache_config, task_queue, ffprobe, ffmpeg).thumbnail(clip)
    ArtifactCache(cache_config, task_queue, ffprobe, ffmpeg).thumbnail(clip)

    assert ffmpeg.extract_frame.call_count == 1


def test_changed_source_gets_a_new_artifact(cache, ffmpeg, clip):
    before = cache.thumbnail(clip)
    clip.write_bytes(b"video" * 200)
    after = cache.thumbnail(clip)

    assert before != after
    assert ffmpeg.extract_frame.call_count == 2


def test_deleted_artifact_is_regenerated(cache, ffmpeg, clip):
    path = cache.thumbnail(clip)
    path.unlink()

    again = cache.thumbnail(clip)

    assert again == path
    assert again.exists()
    assert ffmpeg.extract_frame.call_count == 2


def test_force_refresh_regenerates(cache, ffmpeg, clip):
    cache.thumbnail(clip)
    refreshed = cache.thumbnail(clip, ThumbnailOptions(timestamp=3.0), force_refresh=True)

    assert refreshed.exists()
    assert ffmpeg.extract_frame.call_count == 2
    assert ffmpeg.extract_frame.call_args[0][2] == 3.0


def test_thumbnail_timestamp_defaults_to_ten_percent_of_duration(cache, ffmpeg, clip):
    cache.thumbnail(clip)

    source, output, timestamp, width, height = ffmpeg.extract_frame.call_args[0]
    assert timestamp == pytest.approx(2.0)
    assert (width, height) == (960, 540)


def test_thumbnail_timestamp_uses_trim_midpoint(cache, ffmpeg, ffprobe, clip):
    cache.thumbnail(clip, ThumbnailOptions(trim_start=4.0, trim_end=10.0))

    assert ffmpeg.extract_frame.call_args[0][2] == pytest.approx(7.0)
    ffprobe.probe.assert_not_called()


def test_thumbnail_timestamp_uses_known_duration_without_probing(cache, ffmpeg, ffprobe, clip):
    cache.thumbnail(clip, ThumbnailOptions(duration=50.0))

    assert ffmpeg.extract_frame.call_args[0][2] == pytest.approx(5.0)
    ffprobe.probe.assert_not_called()


# ============================================================================
# Single flight
# ============================================================================

def test_concurrent_requests_share_one_generation(cache, ffmpeg, clip):
    gate = threading.Event()

    def slow_frame(*args):
        gate.wait(timeout=5)
        return _write_frame(*args)

    ffmpeg.extract_frame.side_effect = slow_frame

    futures = [cache.resolve(clip, ArtifactKind.THUMBNAIL) for _ in range(8)]
    assert all(f is futures[0] for f in futures)
    assert cache.is_in_flight(clip, ArtifactKind.THUMBNAIL)

    gate.set()
    results = {f.result(timeout=5) for f in futures}

    assert len(results) == 1
    assert ffmpeg.extract_frame.call_count == 1
    assert not cache.is_in_flight(clip, ArtifactKind.THUMBNAIL)


def test_requests_from_many_threads_share_one_generation(cache, ffmpeg, clip):
    gate = threading.Event()

    def slow_frame(*args):
        gate.wait(timeout=5)
        return _write_frame(*args)

    ffmpeg.extract_frame.side_effect = slow_frame

    with ThreadPoolExecutor(max_workers=8) as pool:
        pending = [pool.submit(cache.thumbnail, clip) for _ in range(16)]
        threading.Timer(0.2, gate.set).start()
        results = {p.result(timeout=10) for p in pending}

    assert len(results) == 1
    assert ffmpeg.extract_frame.call_count == 1


def test_force_refresh_joins_running_generation(cache, ffmpeg, clip):
    gate = threading.Event()

    def slow_frame(*args):
        gate.wait(timeout=5)
        return _write_frame(*args)

    ffmpeg.extract_frame.side_effect = slow_frame

    first = cache.resolve(clip, ArtifactKind.THUMBNAIL)
    refresh = cache.resolve(clip, ArtifactKind.THUMBNAIL, force_refresh=True)
    gate.set()

    assert refresh is first
    assert first.result(timeout=5).exists()
    assert ffmpeg.extract_frame.call_count == 1


def test_preload_marks_requests_high_priority(cache, ffmpeg, clip):
    gate = threading.Event()

    def slow_frame(*args):
        gate.wait(timeout=5)
        return _write_frame(*args)

    ffmpeg.extract_frame.side_effect = slow_frame

    futures = cache.preload([clip])
    assert cache.is_high_priority(clip, ArtifactKind.THUMBNAIL)

    gate.set()
    futures[0].result(timeout=5)
    assert not cache.is_high_priority(clip, ArtifactKind.THUMBNAIL)


# ============================================================================
# Failures
# ============================================================================

def test_failed_generation_is_not_cached(cache, ffmpeg, clip):
    ffmpeg.extract_frame.side_effect = EngineError("frame grab failed", returncode=1)

    with pytest.raises(EngineError):
        cache.thumbnail(clip)
    assert not cache.is_in_flight(clip, ArtifactKind.THUMBNAIL)

    ffmpeg.extract_frame.side_effect = _write_frame
    assert cache.thumbnail(clip).exists()
    assert ffmpeg.extract_frame.call_count == 2


def test_empty_output_is_rejected_and_removed(cache, ffmpeg, clip):
    def empty_frame(source, output, *args):
        output.write_bytes(b"")
        return output

    ffmpeg.extract_frame.side_effect = empty_frame

    with pytest.raises(ArtifactGenerationError):
        cache.thumbnail(clip)
    assert not cache.artifact_location(cache.fingerprint(clip), ArtifactKind.THUMBNAIL).exists()


# ============================================================================
# Extracted audio
# ============================================================================

def test_extracted_audio_writes_one_wav_per_stream_and_a_manifest(cache, ffmpeg, clip):
    tracks = cache.extracted_audio(clip)

    assert [t.name for t in tracks] == ["audio_track_0.wav", "audio_track_1.wav"]
    directory = tracks[0].parent
    manifest = json.loads((directory / "manifest.json").read_text())
    assert manifest["files"] == ["audio_track_0.wav", "audio_track_1.wav"]
    assert manifest["sample_rate"] == 48000

    kwargs = ffmpeg.extract_audio_tracks.call_args[1]
    assert kwargs == {"sample_rate": 48000, "channels": 2, "timeout_s": 30.0}

    assert cache.extracted_audio(clip) == tracks
    assert ffmpeg.extract_audio_tracks.call_count == 1


def test_partial_audio_extraction_leaves_nothing_behind(cache, ffmpeg, clip):
    def first_track_only(source, outputs, **kwargs):
        outputs[0].write_bytes(b"RIFFwav")
        raise EngineError("Audio extraction failed on track 1", returncode=1)

    ffmpeg.extract_audio_tracks.side_effect = first_track_only

    with pytest.raises(EngineError):
        cache.extracted_audio(clip)

    directory = cache.artifact_location(cache.fingerprint(clip), ArtifactKind.EXTRACTED_AUDIO)
    assert list(directory.iterdir()) == []

    ffmpeg.extract_audio_tracks.side_effect = _write_tracks
    assert len(cache.extracted_audio(clip)) == 2


def test_audio_without_manifest_is_not_trusted(cache_config, task_queue, ffprobe, ffmpeg, clip):
    cache = ArtifactCache(cache_config, task_queue, ffprobe, ffmpeg)
    tracks = cache.extracted_audio(clip)
    (tracks[0].parent / "manifest.json").unlink()

    fresh = ArtifactCache(cache_config, task_queue, ffprobe, ffmpeg)
    assert fresh.extracted_audio(clip) == tracks
    assert ffmpeg.extract_audio_tracks.call_count == 2


def test_missing_track_file_triggers_regeneration(cache, ffmpeg, clip):
    tracks = cache.extracted_audio(clip)
    tracks[1].unlink()

    assert cache.extracted_audio(clip) == tracks
    assert ffmpeg.extract_audio_tracks.call_count == 2


def test_source_without_audio_yields_empty_list(cache, ffmpeg, ffprobe, clip):
    ffprobe.probe.return_value = _probe_data(audio_streams=0)

    assert cache.extracted_audio(clip) == []
    assert cache.extracted_audio(clip) == []
    ffmpeg.extract_audio_tracks.assert_not_called()
    assert ffprobe.probe.call_count == 1


# ============================================================================
# Metadata and timeline
# ============================================================================

def test_probe_metadata_is_cached_as_json(cache, ffprobe, clip, cache_root):
    data = cache.probe_metadata(clip)
    again = cache.probe_metadata(clip)

    assert data == again == _probe_data()
    assert ffprobe.probe.call_count == 1
    assert len(list((cache_root / "metadata").glob("*.json"))) == 1


def test_probe_metadata_uncached_always_probes(cache, ffprobe, clip):
    cache.probe_metadata(clip, cached=False)
    cache.probe_metadata(clip, cached=False)
    assert ffprobe.probe.call_count == 2


def test_thumbnail_reuses_cached_probe_document(cache, ffprobe, clip):
    cache.probe_metadata(clip)
    cache.thumbnail(clip)
    assert ffprobe.probe.call_count == 1


def test_timeline_thumbnails_are_evenly_spaced(cache, ffmpeg, clip):
    frames = cache.timeline_thumbnails(clip, count=4)

    assert [f.name for f in frames] == ["thumb-1.png", "thumb-2.png", "thumb-3.png", "thumb-4.png"]
    timestamps = [c[0][2] for c in ffmpeg.extract_frame.call_args_list]
    assert timestamps == pytest.approx([0.0, 5.0, 10.0, 15.0])
    assert all(c[0][3:] == (160, 90) for c in ffmpeg.extract_frame.call_args_list)


# ============================================================================
# Events and housekeeping
# ============================================================================

def test_generation_publishes_artifact_event(cache, event_bus, clip):
    received = []
    event_bus.subscribe(ArtifactGenerated, received.append)

    path = cache.thumbnail(clip)
    cache.thumbnail(clip)

    assert len(received) == 1
    assert received[0].kind == ArtifactKind.THUMBNAIL
    assert received[0].paths == [path]


def test_clear_removes_artifacts_of_one_kind(cache, ffmpeg, clip):
    thumb = cache.thumbnail(clip)
    tracks = cache.extracted_audio(clip)

    cache.clear(ArtifactKind.THUMBNAIL)

    assert not thumb.exists()
    assert all(t.exists() for t in tracks)
    cache.thumbnail(clip)
    assert ffmpeg.extract_frame.call_count == 2


def test_max_bytes_prunes_older_artifacts(tmp_path, task_queue, ffprobe, ffmpeg):
    config = CacheConfig(root=tmp_path / "cache", max_bytes=10)
    cache = ArtifactCache(config, task_queue, ffprobe, ffmpeg)
    library = tmp_path / "library"
    library.mkdir()
    first = library / "a.mp4"
    second = library / "b.mp4"
    first.write_bytes(b"a")
    second.write_bytes(b"b")

    old = cache.thumbnail(first)
    new = cache.thumbnail(second)

    assert new.exists()
    assert not old.exists()

import pytest
import shutil
import yaml
from pathlib import Path
from clipfolio.config.models import AppConfig, CacheConfig, ExportConfig
from clipfolio.infrastructure.event_bus import EventBus
from clipfolio.infrastructure.task_queue import BoundedTaskQueue

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def cache_root(tmp_path):
    """Cache root inside the test's temporary directory."""
    root = tmp_path / "cache"
    root.mkdir()
    return root

@pytest.fixture
def sample_config(cache_root):
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "threads": 4,
            "extensions": [".mp4", ".mov", ".mkv"],
            "debug": False,
        },
        cache={"root": cache_root},
        watch={"debounce_ms": 50},
    )

@pytest.fixture
def cache_config(cache_root):
    return CacheConfig(root=cache_root)

@pytest.fixture
def export_config():
    return ExportConfig()

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "clipfolio.yaml"

    content = {
        'general': {
            'threads': 2,
            'extensions': ['mp4', 'MOV'],
            'debug': True,
        },
        'cache': {
            'root': str(tmp_path / "cache"),
            'thumbnail_width': 640,
            'thumbnail_height': 360,
        },
        'export': {
            'max_size_retries': 3,
            'partial_output_policy': 'delete',
        },
        'watch': {
            'debounce_ms': 250,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Infrastructure Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def task_queue():
    queue = BoundedTaskQueue(max_concurrent=4, name="test-queue")
    yield queue
    queue.shutdown(wait=True)

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def library_dir(tmp_path):
    """Creates a test library directory."""
    library = tmp_path / "library"
    library.mkdir()
    return library

@pytest.fixture
def dummy_video_files(library_dir):
    """Creates dummy video files in the library directory."""
    files = []

    for i in range(3):
        f = library_dir / f"clip{i}.mp4"
        f.write_bytes(b"dummy video content " * 100)  # ~2KB
        files.append(f)

    # Create a subdirectory with a file
    subdir = library_dir / "trip"
    subdir.mkdir()
    f = subdir / "beach.mov"
    f.write_bytes(b"dummy video content " * 100)
    files.append(f)

    # Not a video
    (library_dir / "notes.txt").write_text("not a clip")

    return files

# ============================================================================
# Real engine (integration tests)
# ============================================================================

@pytest.fixture
def ffmpeg_available():
    if not shutil.which("ffmpeg") or not shutil.which("ffprobe"):
        pytest.skip("ffmpeg/ffprobe not installed")
    return True

@pytest.fixture
def generated_clip(tmp_path, ffmpeg_available):
    """Renders a short test clip with two audio streams."""
    import subprocess

    clip = tmp_path / "library" / "generated.mp4"
    clip.parent.mkdir(exist_ok=True)
    cmd = [
        "ffmpeg", "-y", "-v", "error",
        "-f", "lavfi", "-i", "testsrc=size=320x240:rate=25:duration=4",
        "-f", "lavfi", "-i", "sine=frequency=440:duration=4",
        "-f", "lavfi", "-i", "sine=frequency=880:duration=4",
        "-map", "0:v", "-map", "1:a", "-map", "2:a",
        "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac",
        str(clip),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        pytest.skip(f"Could not render test clip: {result.stderr}")
    return clip

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (integration tests with real ffmpeg)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )

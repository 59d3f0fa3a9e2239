import pytest
import yaml
from pathlib import Path
from pydantic import ValidationError
from clipfolio.config.loader import load_config
from clipfolio.config.models import AppConfig, CacheConfig, ExportConfig, GeneralConfig, WatchConfig


def test_config_defaults():
    config = AppConfig()
    assert config.general.threads == 6
    assert config.general.extensions == [".mp4", ".avi", ".mov", ".mkv", ".webm", ".flv", ".wmv"]
    assert config.cache.root.name == "clipfolio"
    assert (config.cache.thumbnail_width, config.cache.thumbnail_height) == (960, 540)
    assert config.cache.sample_rate == 48000
    assert config.cache.max_bytes is None
    assert config.export.safety_ratio == 0.92
    assert config.export.shrink_factor == 0.85
    assert config.export.max_size_retries == 2
    assert config.export.default_target_mb == 10.0
    assert config.export.partial_output_policy == "keep"
    assert config.watch.debounce_s == 0.5


@pytest.mark.parametrize("value, expected", [(0, 1), (-2, 1), (2.9, 2), ("3", 3), ("many", 1)])
def test_threads_are_coerced_to_at_least_one(value, expected):
    assert GeneralConfig(threads=value).threads == expected


def test_extensions_are_normalized():
    assert GeneralConfig(extensions=["MP4", ".Mov"]).extensions == [".mp4", ".mov"]


def test_invalid_partial_output_policy():
    with pytest.raises(ValidationError):
        ExportConfig(partial_output_policy="archive")


def test_invalid_shrink_factor():
    with pytest.raises(ValidationError):
        ExportConfig(shrink_factor=1.0)


def test_invalid_thumbnail_position():
    with pytest.raises(ValidationError):
        CacheConfig(thumbnail_position_pct=1.5)


def test_empty_cache_root_rejected():
    with pytest.raises(ValidationError):
        AppConfig(cache={"root": ""})


def test_watch_debounce_conversion():
    assert WatchConfig(debounce_ms=250).debounce_s == 0.25


def test_load_config_from_yaml(config_yaml_path, tmp_path):
    config = load_config(config_yaml_path)

    assert config.general.threads == 2
    assert config.general.extensions == [".mp4", ".mov"]
    assert config.general.debug is True
    assert config.cache.root == tmp_path / "cache"
    assert config.cache.thumbnail_width == 640
    assert config.export.max_size_retries == 3
    assert config.export.partial_output_policy == "delete"
    assert config.watch.debounce_s == 0.25


def test_load_config_without_path_returns_defaults():
    assert load_config(None) == AppConfig()


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_empty_file(tmp_path):
    conf = tmp_path / "empty.yaml"
    conf.write_text("")
    assert load_config(conf).general.threads == 6


def test_load_config_maps_legacy_cache_dir(tmp_path):
    conf = tmp_path / "legacy.yaml"
    conf.write_text(yaml.dump({"cache_dir": str(tmp_path / "old-cache")}))

    assert load_config(conf).cache.root == Path(tmp_path / "old-cache")

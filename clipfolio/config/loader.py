import yaml
from pathlib import Path
from typing import Optional
from .models import AppConfig

def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if config_path is None:
        return AppConfig()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Older files kept the cache directory at the root as `cache_dir`
    cache_dir = data.pop("cache_dir", None)
    if cache_dir is not None:
        data.setdefault("cache", {}).setdefault("root", cache_dir)

    return AppConfig(**data)

import yaml
from pathlib import Path
from typing import Optional
from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("conf/vsz.yaml")


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model.

    Without an explicit path, a missing default file yields the built-in
    defaults; an explicit path that does not exist is an error.
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return AppConfig()
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    # Codec may be written as "h264"/"h265" as well as the encoder name
    compression = data.get("compression")
    if isinstance(compression, dict) and isinstance(compression.get("codec"), str):
        compression["codec"] = _CODEC_ALIASES.get(compression["codec"].lower(), compression["codec"])

    return AppConfig(**data)


_CODEC_ALIASES = {
    "h264": "libx264",
    "h.264": "libx264",
    "avc": "libx264",
    "h265": "libx265",
    "h.265": "libx265",
    "hevc": "libx265",
}

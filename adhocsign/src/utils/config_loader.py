import os
from pathlib import Path
import toml
from typing import Dict, Any


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("ADHOCSIGN_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".adhocsign" / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ValueError(f"Failed to load config {config_path}: {e}") from e


def get_signing_config() -> Dict[str, Any]:
    """Get the [signing] section of the config."""
    return load_config().get("signing", {})


def get_rcodesign_path() -> str:
    """Get the signing tool executable from environment or config."""
    env_path = os.environ.get("ADHOCSIGN_RCODESIGN")
    if env_path:
        return env_path
    return get_signing_config().get("rcodesign_path", "rcodesign")

"""XDG-compliant directory paths."""

import os
from pathlib import Path

APP_NAME = "vizcache"


def get_cache_dir() -> Path:
    """Get XDG-compliant cache directory for artifacts.

    Priority:
    1. $VIZCACHE_CACHE_DIR
    2. $XDG_CACHE_HOME/vizcache/
    3. ~/.cache/vizcache/

    Returns:
        Path to cache directory
    """
    override = os.environ.get("VIZCACHE_CACHE_DIR")
    if override:
        path = Path(override)
    else:
        cache_home = os.environ.get("XDG_CACHE_HOME")
        base = Path(cache_home) if cache_home else Path.home() / ".cache"
        path = base / APP_NAME

    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path


def get_config_dir() -> Path:
    """Get XDG-compliant configuration directory.

    Priority:
    1. $XDG_CONFIG_HOME/vizcache/
    2. ~/.config/vizcache/

    Returns:
        Path to configuration directory (not created)
    """
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def get_data_dir() -> Path:
    """Get XDG-compliant data directory for quota state.

    Priority:
    1. $XDG_DATA_HOME/vizcache/
    2. ~/.local/share/vizcache/

    Returns:
        Path to data directory
    """
    data_home = os.environ.get("XDG_DATA_HOME")
    if data_home:
        path = Path(data_home) / APP_NAME
    else:
        path = Path.home() / ".local" / "share" / APP_NAME

    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path

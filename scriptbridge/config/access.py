"""Cached configuration access facade.

The config file location can be overridden with ``SCRIPTBRIDGE_CONFIG``; the
resolved path is the cache key so different files never share an entry.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path

from scriptbridge.config.loader import get_config_path, load_config
from scriptbridge.config.schema import Config

CONFIG_PATH_ENV = "SCRIPTBRIDGE_CONFIG"

_lock = threading.RLock()
_cache: dict[Path, Config] = {}


def resolve_config_path(config_path: Path | None = None) -> Path:
    """Explicit path, else ``$SCRIPTBRIDGE_CONFIG``, else the default location."""
    if config_path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV, "").strip()
        config_path = Path(env_path) if env_path else get_config_path()
    return Path(config_path).expanduser().resolve()


def get_config(*, config_path: Path | None = None, force_reload: bool = False) -> Config:
    """Get config with process-local cache and optional refresh."""
    path = resolve_config_path(config_path)
    with _lock:
        if force_reload or path not in _cache:
            _cache[path] = load_config(path)
        return _cache[path]


def clear_config_cache(*, config_path: Path | None = None) -> None:
    """Clear cached config entry (or all cache entries)."""
    with _lock:
        if config_path is None:
            _cache.clear()
            return
        _cache.pop(resolve_config_path(config_path), None)

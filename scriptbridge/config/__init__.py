"""Configuration module for scriptbridge."""

from scriptbridge.config.loader import load_config, get_config_path, save_config
from scriptbridge.config.schema import Config, LoggingConfig, RateLimitConfig, SandboxConfig
from scriptbridge.config.access import get_config, clear_config_cache

__all__ = [
    "Config",
    "LoggingConfig",
    "RateLimitConfig",
    "SandboxConfig",
    "load_config",
    "save_config",
    "get_config_path",
    "get_config",
    "clear_config_cache",
]

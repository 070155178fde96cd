"""Configuration schema using Pydantic.

Single data model and defaults for the sandbox, rate limiter and logging;
persisted to ~/.scriptbridge/config.json and overridable via SCRIPTBRIDGE_* env vars.
"""

from pydantic import BaseModel, Field, ConfigDict
from pydantic_settings import BaseSettings

DEFAULT_ALLOWED_MODULES = [
    "json",
    "math",
    "re",
    "datetime",
    "itertools",
    "functools",
    "collections",
    "statistics",
    "decimal",
    "fractions",
    "heapq",
    "bisect",
    "textwrap",
]


class SandboxConfig(BaseModel):
    """Isolated script context configuration."""
    timeout_ms: int = Field(default=30_000, gt=0)
    python_executable: str = ""  # Empty = the interpreter running the host
    inherit_env: list[str] = Field(default_factory=list)  # Env var names copied into the context; none by default
    allowed_modules: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MODULES))
    memory_limit_mb: int = Field(default=0, ge=0)  # 0 = unlimited (RLIMIT_AS where supported)
    max_message_bytes: int = Field(default=16 * 1024 * 1024, gt=1024)
    stderr_tail_lines: int = Field(default=20, ge=1)


class RateLimitConfig(BaseModel):
    """Sliding-window admission control for host calls."""
    max_calls: int = Field(default=150, ge=1)
    window_ms: int = Field(default=60_000, gt=0)
    margin_ms: int = Field(default=10, ge=0)  # Slack added to computed waits


class LoggingConfig(BaseModel):
    """Loguru sink configuration used by the CLI."""
    level: str = "INFO"
    file_enabled: bool = False


class Config(BaseSettings):
    """Root configuration for scriptbridge."""
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        env_prefix="SCRIPTBRIDGE_",
        env_nested_delimiter="__"
    )

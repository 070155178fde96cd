"""Loguru helpers for consistent console and file logging in CLI commands."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from scriptbridge.config.loader import get_data_dir

_SINK_IDS: dict[str, int] = {}

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <level>{message}</level>"


def configure_console_logging(level: str = "INFO", enabled: bool = True) -> None:
    """Replace the default sink with a stderr sink at ``level``, or silence the package."""
    logger.remove()
    _SINK_IDS.clear()
    if not enabled:
        logger.disable("scriptbridge")
        return
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)
    logger.enable("scriptbridge")


def ensure_rotating_log_file(name: str, level: str = "INFO") -> Path:
    """Ensure a rotating log sink for the given command name."""
    log_dir = get_data_dir() / "logs"
    log_path = log_dir / f"{name}.log"
    if name in _SINK_IDS:
        return log_path
    log_dir.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(
        str(log_path),
        level=level.upper(),
        rotation="10 MB",
        retention="14 days",
        enqueue=True,
        encoding="utf-8",
        backtrace=False,
        diagnose=False,
    )
    _SINK_IDS[name] = sink_id
    return log_path

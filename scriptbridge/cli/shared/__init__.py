"""Helpers shared by CLI commands."""

from scriptbridge.cli.shared.logging_utils import configure_console_logging, ensure_rotating_log_file

__all__ = ["configure_console_logging", "ensure_rotating_log_file"]

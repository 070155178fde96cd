"""Built-in diagnostics operations exposed to scripts run from the CLI."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from scriptbridge.sandbox.dispatch import DispatchTable
from scriptbridge.utils.exceptions import ScriptBridgeError


class Diagnostics:
    """Small, side-effect free host surface for trying scripts out."""

    async def echo(self, value: Any = None) -> Any:
        """Return the argument unchanged."""
        return value

    async def sleep(self, ms: int = 0) -> int:
        """Sleep for ``ms`` milliseconds on the host, then return ``ms``."""
        if ms < 0:
            raise ValueError("ms must be non-negative")
        await asyncio.sleep(ms / 1000.0)
        return ms

    async def now(self) -> str:
        """Current host time as an ISO 8601 UTC string."""
        return datetime.now(timezone.utc).isoformat()

    async def fail(self, message: str = "Requested failure", code: str = "DIAG_FAILURE") -> None:
        """Raise an error with the given message and code."""
        raise ScriptBridgeError(message, code=code, fix="diag.fail always fails; remove the call.")


def build_diagnostics_table() -> DispatchTable:
    table = DispatchTable()
    table.bind_object("diag", Diagnostics(), ["echo", "sleep", "now", "fail"])
    return table

"""Connection-scoped state: one dispatch table, one session, one script at a time."""

from __future__ import annotations

from loguru import logger

from scriptbridge.config.schema import Config
from scriptbridge.sandbox.bridge import ProgressCallback, SessionUpdateCallback
from scriptbridge.sandbox.dispatch import DispatchTable
from scriptbridge.sandbox.host import Capabilities, ExecutionHost
from scriptbridge.sandbox.protocol import SandboxResult
from scriptbridge.sandbox.rate_limiter import RateLimiter
from scriptbridge.sandbox.session import SessionStore
from scriptbridge.utils.exceptions import ScriptBridgeError


class ScriptConnection:
    """
    Owns everything that outlives a single invocation.

    The transport layer creates one per client connection, calls ``execute()``
    for each script, and ``close()`` when the client goes away.
    """

    def __init__(
        self,
        dispatch_table: DispatchTable,
        *,
        config: Config | None = None,
        host: ExecutionHost | None = None,
        session: SessionStore | None = None,
    ):
        self.host = host or ExecutionHost(config)
        self.session = session if session is not None else SessionStore()
        self.capabilities = Capabilities(dispatch_table=dispatch_table, session=self.session)
        self._running = False
        self._closed = False

    @property
    def dispatch_table(self) -> DispatchTable:
        return self.capabilities.dispatch_table

    @property
    def busy(self) -> bool:
        return self._running

    @property
    def closed(self) -> bool:
        return self._closed

    async def execute(
        self,
        script: str,
        *,
        timeout_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_session_update: SessionUpdateCallback | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> SandboxResult:
        """Run one script; refuses to start while another is still running."""
        if self._closed:
            return _refuse("Connection is closed", "CONNECTION_CLOSED")
        if self._running:
            return _refuse(
                "Another script is already running on this connection",
                "CONCURRENT_EXECUTION",
                fix="Wait for the running script to finish before starting another.",
            )
        self._running = True
        try:
            return await self.host.execute(
                script,
                self.capabilities,
                timeout_ms=timeout_ms,
                on_progress=on_progress,
                on_session_update=on_session_update,
                rate_limiter=rate_limiter,
            )
        finally:
            self._running = False

    def reset(self) -> None:
        """Explicitly clear session state."""
        self.session.clear()
        logger.debug("Session reset")

    def close(self) -> None:
        """Connection teardown: session state is dropped."""
        if self._closed:
            return
        self._closed = True
        self.session.clear()
        logger.debug("Connection closed")

    async def __aenter__(self) -> "ScriptConnection":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


def _refuse(message: str, code: str, fix: str | None = None) -> SandboxResult:
    error = ScriptBridgeError(message, code=code, fix=fix)
    return SandboxResult.failure(error.to_error_info(), [])

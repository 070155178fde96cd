"""Execution host for untrusted scripts.

Isolation model:
 - Each ``execute()`` call gets a fresh Python child process (``python -I``)
   with an empty environment and a throwaway working directory.
 - The child runs a standard-library-only bootstrap; it never imports
   scriptbridge and never sees the host's credentials or objects.
 - All host operations go through the bridge as messages on stdin/stdout.
 - Hung scripts are killed when the timeout fires.

Execution flow:
 1. Spawn the child and send the ``start`` message (script, session snapshot,
    registered method names).
 2. The child wraps the script in an async entry point and runs it.
 3. ``call`` messages are dispatched concurrently through the bridge;
    ``progress``/``session-update`` are routed as they arrive.
 4. ``done``, ``fatal``, a context failure or the timeout settles the
    invocation; the first one wins and the child is torn down once.
"""

from __future__ import annotations

import asyncio
import os
import sys
import tempfile
import uuid
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as MessageValidationError

from scriptbridge.config.access import get_config
from scriptbridge.config.schema import Config, SandboxConfig
from scriptbridge.sandbox.bridge import Bridge, ProgressCallback, SessionUpdateCallback
from scriptbridge.sandbox.dispatch import DispatchTable
from scriptbridge.sandbox.protocol import (
    CallMessage,
    DoneMessage,
    FatalMessage,
    SandboxResult,
    StartMessage,
    WorkerMessage,
    encode_message,
    parse_worker_message,
)
from scriptbridge.sandbox.rate_limiter import RateLimiter
from scriptbridge.sandbox.session import SessionStore
from scriptbridge.sandbox.settlement import Settlement
from scriptbridge.utils.exceptions import (
    ContextCreationFailure,
    ContextRuntimeError,
    ErrorInfo,
    ExecutionTimeout,
    ScriptBridgeError,
    ScriptThrow,
    ValidationError,
    sanitize_error_message,
)

_STDERR_DRAIN_SECONDS = 1.0


@lru_cache(maxsize=1)
def _worker_source() -> str:
    return Path(__file__).with_name("_worker.py").read_text(encoding="utf-8")


@dataclass(frozen=True)
class Capabilities:
    """What a script may touch: the host operations and the connection's session."""

    dispatch_table: DispatchTable
    session: SessionStore


class Invocation:
    """
    One run of one script, from spawn to settlement.

    Settlement is driven by whichever of ``done``, ``fatal``, context exit /
    protocol violation, timeout, or spawn failure happens first.
    """

    def __init__(
        self,
        script: str,
        capabilities: Capabilities,
        *,
        config: SandboxConfig,
        rate_limiter: RateLimiter,
        timeout_ms: int,
        on_progress: ProgressCallback | None = None,
        on_session_update: SessionUpdateCallback | None = None,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.script = script
        self.timeout_ms = timeout_ms
        self.progress_messages: list[str] = []
        self.process: asyncio.subprocess.Process | None = None
        self._capabilities = capabilities
        self._config = config
        self._on_progress = on_progress
        self._bridge = Bridge(
            capabilities.dispatch_table,
            rate_limiter,
            capabilities.session,
            on_progress=self._record_progress,
            on_session_update=on_session_update,
        )
        self._settlement: Settlement[SandboxResult] = Settlement(self._teardown)
        self._calls: set[asyncio.Task[None]] = set()
        self._pumps: list[asyncio.Task[None]] = []
        self._stderr_task: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._workdir: tempfile.TemporaryDirectory[str] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=config.stderr_tail_lines)
        self._write_lock = asyncio.Lock()

    @property
    def settled(self) -> bool:
        return self._settlement.settled

    async def run(self) -> SandboxResult:
        """Start the context and wait for settlement. Only the caller's own cancellation propagates."""
        logger.info(
            "Invocation {} starting (timeout {}ms, {} host methods)",
            self.id,
            self.timeout_ms,
            len(self._bridge.available_methods),
        )
        try:
            try:
                await self._start()
            except Exception as e:
                logger.warning("Invocation {}: could not start script context: {}", self.id, e)
                self._fail(ContextCreationFailure(sanitize_error_message(str(e)) or type(e).__name__))
            else:
                loop = asyncio.get_running_loop()
                self._timer = loop.call_later(self.timeout_ms / 1000.0, self.on_timeout)
                self._stderr_task = loop.create_task(self._pump_stderr())
                self._pumps = [loop.create_task(self._pump_stdout()), self._stderr_task]
            return await self.wait()
        except asyncio.CancelledError:
            self._fail(ScriptBridgeError("Invocation was cancelled", code="CANCELLED"))
            await self.wait()
            raise

    async def wait(self) -> SandboxResult:
        """The settled result, available once teardown has finished."""
        return await self._settlement.wait()

    # ── settlement events ────────────────────────────────────────────────

    def handle_message(self, message: WorkerMessage) -> None:
        """Process one message from the context, in arrival order."""
        if self.settled:
            return
        if isinstance(message, DoneMessage):
            self._settle(SandboxResult.success(message.value, self.progress_messages))
        elif isinstance(message, FatalMessage):
            self._fail(ScriptThrow(message.error))
        elif isinstance(message, CallMessage):
            task = asyncio.get_running_loop().create_task(self._dispatch(message))
            self._calls.add(task)
            task.add_done_callback(self._calls.discard)
        else:
            self._bridge.route(message)

    def on_timeout(self) -> None:
        if self._fail(ExecutionTimeout(self.timeout_ms)):
            logger.warning("Invocation {} timed out after {}ms", self.id, self.timeout_ms)

    def on_context_exit(self, returncode: int | None) -> None:
        last = self._stderr_tail[-1] if self._stderr_tail else ""
        if last:
            message = f"Script context failed: {last}"
        else:
            message = f"Script context exited with code {returncode} before returning a result"
        self._fail(ContextRuntimeError(message, exit_code=returncode, stderr_tail=list(self._stderr_tail)))

    def _fail(self, error: ScriptBridgeError) -> bool:
        return self._settle(SandboxResult.failure(error.to_error_info(), self.progress_messages))

    def _settle(self, result: SandboxResult) -> bool:
        won = self._settlement.settle(result)
        if won:
            outcome = "ok" if result.ok else f"failed [{result.error.code if result.error else '?'}]"
            logger.info("Invocation {} settled: {}", self.id, outcome)
        return won

    def _record_progress(self, text: str) -> None:
        self.progress_messages.append(text)
        if self._on_progress is not None:
            self._on_progress(text)

    # ── context process ──────────────────────────────────────────────────

    def _child_env(self) -> dict[str, str]:
        names = list(self._config.inherit_env)
        if os.name == "nt":
            names.append("SYSTEMROOT")
        return {name: os.environ[name] for name in names if name in os.environ}

    async def _start(self) -> None:
        python = self._config.python_executable or sys.executable
        if not python:
            raise RuntimeError("no Python interpreter configured")
        self._workdir = tempfile.TemporaryDirectory(prefix="scriptbridge-")
        self.process = await asyncio.create_subprocess_exec(
            python,
            "-I",
            "-c",
            _worker_source(),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._workdir.name,
            env=self._child_env(),
            limit=self._config.max_message_bytes,
        )
        start = StartMessage(
            script=self.script,
            session=self._capabilities.session.snapshot(),
            methods=self._bridge.available_methods,
            allowed_modules=list(self._config.allowed_modules),
            memory_limit_mb=self._config.memory_limit_mb,
        )
        assert self.process.stdin is not None
        self.process.stdin.write(encode_message(start))
        await self.process.stdin.drain()
        logger.debug("Invocation {}: context pid {} started", self.id, self.process.pid)

    async def _pump_stdout(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout
        while not self.settled:
            try:
                line = await stdout.readline()
            except ValueError:
                self._fail(ContextRuntimeError(
                    f"Script context sent a message larger than {self._config.max_message_bytes} bytes"
                ))
                return
            if not line:
                break
            if not line.strip():
                continue
            try:
                message = parse_worker_message(line)
            except MessageValidationError as e:
                logger.warning("Invocation {}: malformed message from context: {}", self.id, e)
                self._fail(ContextRuntimeError("Script context sent a malformed message"))
                return
            self.handle_message(message)
        if self.settled:
            return
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=_STDERR_DRAIN_SECONDS)
        self.on_context_exit(returncode)

    async def _pump_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        stderr = self.process.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("Invocation {} stderr: {}", self.id, text)

    async def _dispatch(self, message: CallMessage) -> None:
        response = await self._bridge.handle_call(message)
        await self._send(response)

    async def _send(self, message: BaseModel) -> None:
        if self.process is None or self.process.stdin is None:
            return
        async with self._write_lock:
            if self.settled:
                return
            try:
                self.process.stdin.write(encode_message(message))
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.debug("Invocation {}: context stopped reading ({})", self.id, e)

    async def _teardown(self) -> None:
        """Runs exactly once, right after settlement."""
        if self._timer is not None:
            self._timer.cancel()
        for task in list(self._calls):
            task.cancel()
        process = self.process
        if process is not None:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            if process.stdin is not None:
                process.stdin.close()
            await process.wait()
        for task in self._pumps:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._calls, *self._pumps, return_exceptions=True)
        if self._workdir is not None:
            try:
                self._workdir.cleanup()
            except OSError as e:
                logger.debug("Invocation {}: workdir cleanup failed: {}", self.id, e)
        logger.debug("Invocation {} torn down", self.id)


class ExecutionHost:
    """Runs scripts in isolated contexts. ``execute()`` always returns a ``SandboxResult``."""

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()

    async def execute(
        self,
        script: str,
        capabilities: Capabilities,
        *,
        timeout_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_session_update: SessionUpdateCallback | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> SandboxResult:
        """
        Execute ``script`` against ``capabilities``.

        Args:
            script: Python source; runs as the body of an async function.
            capabilities: Dispatch table and session for this connection.
            timeout_ms: Overrides the configured timeout.
            on_progress: Called synchronously for each ``progress()`` message.
            on_session_update: Called after each ``context`` write is stored.
            rate_limiter: Shared limiter; a fresh one per invocation when omitted.

        Returns:
            The settled result; failures are encoded, never raised.
        """
        if not isinstance(script, str) or not script.strip():
            return _failure(ValidationError("Script must be a non-empty string", field="script"))
        timeout = self.config.sandbox.timeout_ms if timeout_ms is None else timeout_ms
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            return _failure(ValidationError("timeout_ms must be a positive number", field="timeout_ms"))

        invocation = Invocation(
            script,
            capabilities,
            config=self.config.sandbox,
            rate_limiter=rate_limiter or RateLimiter.from_config(self.config.rate_limit),
            timeout_ms=int(timeout),
            on_progress=on_progress,
            on_session_update=on_session_update,
        )
        try:
            return await invocation.run()
        except Exception as e:
            logger.exception("Invocation {} failed unexpectedly", invocation.id)
            return SandboxResult.failure(
                ErrorInfo(message=sanitize_error_message(str(e)) or type(e).__name__, code="INTERNAL_ERROR"),
                invocation.progress_messages,
            )


def _failure(error: ScriptBridgeError) -> SandboxResult:
    return SandboxResult.failure(error.to_error_info(), [])


async def execute_script(
    script: str,
    dispatch_table: DispatchTable,
    session: SessionStore | None = None,
    **options: Any,
) -> SandboxResult:
    """One-off convenience wrapper around ``ExecutionHost.execute``."""
    host = ExecutionHost(options.pop("config", None))
    capabilities = Capabilities(dispatch_table=dispatch_table, session=session or SessionStore())
    return await host.execute(script, capabilities, **options)

"""Bridge between the isolated script context and the host.

Architecture:
 - The host process holds the real dispatch table (and whatever credentials
   its operations close over); the context only ever sees messages.
 - ``call`` messages are looked up in the dispatch table, admitted by the
   rate limiter one call at a time, executed, and answered with exactly one
   ``result`` or ``error`` carrying the same id.
 - ``progress`` and ``session-update`` messages are routed to the caller's
   sinks. ``done``/``fatal`` are settlement signals owned by the execution host.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any, Union

from loguru import logger

from scriptbridge.sandbox.dispatch import DispatchTable
from scriptbridge.sandbox.protocol import (
    CallMessage,
    ErrorMessage,
    ProgressMessage,
    ResultMessage,
    SessionUpdateMessage,
    to_json_value,
)
from scriptbridge.sandbox.rate_limiter import RateLimiter
from scriptbridge.sandbox.session import SessionStore
from scriptbridge.utils.exceptions import (
    DispatchFailure,
    ErrorInfo,
    UnknownDispatchMethod,
    classify_exception,
)

ProgressCallback = Callable[[str], None]
SessionUpdateCallback = Callable[[str, Any], None]

BridgeResponse = Union[ResultMessage, ErrorMessage]


class Bridge:
    """Routes context messages for one invocation."""

    def __init__(
        self,
        dispatch_table: DispatchTable,
        rate_limiter: RateLimiter,
        session: SessionStore,
        *,
        on_progress: ProgressCallback | None = None,
        on_session_update: SessionUpdateCallback | None = None,
    ):
        self._entries = dispatch_table.frozen()
        self._rate_limiter = rate_limiter
        self._session = session
        self._on_progress = on_progress
        self._on_session_update = on_session_update

    @property
    def available_methods(self) -> list[str]:
        return list(self._entries)

    async def handle_call(self, message: CallMessage) -> BridgeResponse:
        """Execute one ``call`` and produce its single response."""
        key = message.key
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("Script called unknown host method {}", key)
            error = UnknownDispatchMethod(key, self._entries.keys())
            return ErrorMessage(id=message.id, error=error.to_error_info())

        try:
            await self._rate_limiter.acquire()
            value = entry.fn(*message.args, **message.kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            failure = DispatchFailure(key, e)
            code, category, _ = classify_exception(e)
            logger.warning("Host method {} failed [{}/{}]: {}", key, code, category.value, failure.message)
            return ErrorMessage(id=message.id, error=failure.to_error_info())

        try:
            payload = to_json_value(value)
        except ValueError as e:
            logger.warning("Host method {} returned a non-JSON value: {}", key, e)
            return ErrorMessage(
                id=message.id,
                error=ErrorInfo(
                    message=f"Result of {key} could not be converted to JSON: {type(value).__name__}",
                    code="INVALID_OUTPUT",
                ),
            )
        logger.debug("Host method {} completed (call {})", key, message.id)
        return ResultMessage(id=message.id, value=payload)

    def route(self, message: ProgressMessage | SessionUpdateMessage) -> None:
        """Deliver a notification message to its sink. Sink failures are logged, not raised."""
        if isinstance(message, ProgressMessage):
            if self._on_progress is None:
                return
            try:
                self._on_progress(message.text)
            except Exception:
                logger.exception("Progress callback failed")
        elif isinstance(message, SessionUpdateMessage):
            try:
                self._session.apply_update(message.key, message.value)
            except Exception as e:
                logger.warning("Rejected session update for '{}': {}", message.key, e)
                return
            if self._on_session_update is None:
                return
            try:
                self._on_session_update(message.key, message.value)
            except Exception:
                logger.exception("Session update callback failed")
        else:
            raise TypeError(f"Bridge does not route '{getattr(message, 'type', message)}' messages")

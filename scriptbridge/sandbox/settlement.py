"""One-shot settlement with a single teardown attached to the completion point."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class Settlement(Generic[T]):
    """
    A result that can be set at most once.

    Any number of racing events may call ``settle()``; the first wins and
    starts ``teardown`` exactly once, the rest return ``False``. ``wait()``
    returns the winning value after teardown has finished. Must be created
    inside a running event loop.
    """

    def __init__(self, teardown: Callable[[], Awaitable[None]] | None = None):
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._teardown = teardown
        self._teardown_task: asyncio.Task[None] | None = None

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, value: T) -> bool:
        """Record ``value`` if nothing has settled yet. Returns whether this call won."""
        if self._future.done():
            return False
        self._future.set_result(value)
        if self._teardown is not None:
            self._teardown_task = asyncio.ensure_future(self._run_teardown())
        return True

    async def _run_teardown(self) -> None:
        try:
            await self._teardown()
        except Exception:
            logger.exception("Teardown after settlement failed")

    async def wait(self) -> T:
        """Wait for the winning value; cancelling the waiter leaves the settlement open."""
        value = await asyncio.shield(self._future)
        if self._teardown_task is not None:
            await asyncio.shield(self._teardown_task)
        return value

"""Sliding-window rate limiter for host calls issued by scripts."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

from loguru import logger

DEFAULT_MAX_CALLS = 150
DEFAULT_WINDOW_MS = 60_000
DEFAULT_MARGIN_MS = 10


class RateLimiter:
    """
    Blocking admission: at most ``max_calls`` admissions in any trailing window.

    ``acquire()`` never rejects. When the window is full it sleeps until the
    oldest admission leaves the window (plus a small margin) and then admits.
    Admissions are serialized so concurrent callers cannot overshoot the limit.
    """

    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_ms: int = DEFAULT_WINDOW_MS,
        margin_ms: int = DEFAULT_MARGIN_MS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.max_calls = max_calls
        self.window = window_ms / 1000.0
        self.margin = max(0, margin_ms) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config) -> "RateLimiter":
        """Build from a ``RateLimitConfig``."""
        return cls(
            max_calls=config.max_calls,
            window_ms=config.window_ms,
            margin_ms=config.margin_ms,
        )

    def _evict(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def in_window(self) -> int:
        """Number of admissions currently inside the trailing window."""
        self._evict(self._clock())
        return len(self._timestamps)

    async def acquire(self) -> float:
        """Suspend until admitted. Returns the number of seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.max_calls:
                    self._timestamps.append(now)
                    return waited
                wait = self.window - (now - self._timestamps[0]) + self.margin
                logger.debug(
                    "Rate limit reached ({} calls / {}s), waiting {:.3f}s",
                    self.max_calls,
                    self.window,
                    wait,
                )
                await self._sleep(wait)
                waited += wait

# services/rate_limiter.py
"""
Process-wide pacing gate for outbound calls.

Permits are handed out at most one per ``1 / rate`` seconds, in the order
they were requested. One instance is built by the crawler process and
passed to every component that talks to the upstream; nothing reaches it
through module state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from jobs.errors import RateLimiterClosed

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        rate_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.interval = 1.0 / rate_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_slot: float | None = None
        self._closed = False
        self.permits = 0
        self.waits = 0

    @classmethod
    def from_settings(cls, settings) -> RateLimiter:
        return cls(settings.crawler_rps)

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> float:
        """Block until the next permit. Returns the seconds waited."""
        if self._closed:
            raise RateLimiterClosed()

        async with self._lock:
            now = self._clock()
            ready = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = ready + self.interval
            self.permits += 1

        wait = ready - now
        if wait > 0:
            self.waits += 1
            await self._sleep(wait)

        if self._closed:
            raise RateLimiterClosed()
        return wait

    async def acquire_after(self, delay: float) -> float:
        """
        Honor an explicit upstream delay and then take a permit. Only the
        caller serves the delay; the shared schedule is untouched until it
        asks for its permit, so other callers keep their normal spacing.
        """
        if self._closed:
            raise RateLimiterClosed()

        delay = max(0.0, delay)
        if delay:
            logger.info("Rate limiter: honoring upstream delay %.2fs", delay)
            await self._sleep(delay)
        return delay + await self.acquire()

    def close(self) -> None:
        self._closed = True
        logger.info("Rate limiter closed after %d permits (%d waited)", self.permits, self.waits)

    async def __aenter__(self) -> RateLimiter:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateGovernor:
    """Caps outbound calls by concurrency, start spacing and a refilling budget.

    Every outbound call to the job board or the automation worker goes through one
    shared instance. A call waits for a concurrency slot, then for the minimum
    spacing since the previous start, then for a budget token. The budget refills
    to ``reservoir`` every ``refresh_interval_seconds``.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        min_interval_seconds: float = 0.6,
        reservoir: int = 100,
        refresh_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_concurrent = max(1, max_concurrent)
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self.reservoir = max(1, reservoir)
        self.refresh_interval_seconds = max(0.001, refresh_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._start_lock = asyncio.Lock()
        self._tokens = self.reservoir
        self._refilled_at = clock()
        self._last_start: float | None = None
        self._running = 0

    @property
    def running(self) -> int:
        return self._running

    @property
    def tokens(self) -> int:
        return self._tokens

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._slots:
            await self._wait_for_start()
            self._running += 1
            try:
                yield
            finally:
                self._running -= 1

    async def schedule(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self.slot():
            return await func(*args, **kwargs)

    async def _wait_for_start(self) -> None:
        async with self._start_lock:
            while True:
                now = self._clock()
                self._refill(now)
                if self._last_start is not None:
                    spacing_left = self._last_start + self.min_interval_seconds - now
                    if spacing_left > 0:
                        await self._sleep(spacing_left)
                        continue
                if self._tokens > 0:
                    self._tokens -= 1
                    self._last_start = now
                    return
                refill_in = self._refilled_at + self.refresh_interval_seconds - now
                logger.info("rate budget exhausted; waiting %.1fs for refill", refill_in)
                await self._sleep(max(refill_in, 0.001))

    def _refill(self, now: float) -> None:
        if now - self._refilled_at >= self.refresh_interval_seconds:
            self._tokens = self.reservoir
            self._refilled_at = now

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Literal

from autoapply.jobs.application_worker import ApplicationQueueWorker

logger = logging.getLogger(__name__)

WorkerState = Literal["stopped", "running"]


class WorkerSupervisor:
    """Owns the queue worker's lifecycle: start, stop and the periodic tick loop.

    ``start`` and ``stop`` are idempotent. A failing tick is logged and retried
    with jittered exponential backoff; it never ends the loop.
    """

    def __init__(
        self,
        worker: ApplicationQueueWorker,
        *,
        interval_seconds: float = 10.0,
        max_backoff_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.worker = worker
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max(interval_seconds, max_backoff_seconds)
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.last_tick_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> WorkerState:
        return "running" if self.is_running else "stopped"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.is_running:
            logger.info("queue worker already running")
            return False
        self._task = asyncio.create_task(self._run(), name="application-queue-worker")
        logger.info("queue worker started interval=%.1fs", self.interval_seconds)
        return True

    async def stop(self) -> bool:
        task = self._task
        if task is None or task.done():
            logger.info("queue worker already stopped")
            self._task = None
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("queue worker stopped after ticks=%s", self.ticks)
        return True

    async def run_forever(self) -> None:
        await self._run()

    async def _run(self) -> None:
        backoff = self.interval_seconds
        while True:
            try:
                await self.worker.run_tick()
                self.ticks += 1
                self.last_tick_at = datetime.now(timezone.utc)
                self.last_error = None
                backoff = self.interval_seconds
                await self._sleep(self.interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                self.last_error = str(exc)
                logger.exception("worker tick failed: %s; retry in %.1fs", exc, sleep_for)
                await self._sleep(sleep_for)
                backoff = sleep_for

from __future__ import annotations

import asyncio

import pytest

from autoapply.jobs.supervisor import WorkerSupervisor


class StopLoop(BaseException):
    pass


class FakeWorker:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.ticks = 0

    async def run_tick(self) -> None:
        self.ticks += 1
        if self.ticks <= self.failures:
            raise RuntimeError(f"tick {self.ticks} failed")


def test_start_and_stop_are_idempotent() -> None:
    worker = FakeWorker()

    async def fast_sleep(seconds: float) -> None:
        await asyncio.sleep(0)

    async def run() -> None:
        supervisor = WorkerSupervisor(worker, interval_seconds=10.0, sleep=fast_sleep)
        assert supervisor.state == "stopped"
        assert supervisor.start() is True
        assert supervisor.start() is False
        assert supervisor.is_running
        for _ in range(5):
            await asyncio.sleep(0)
        assert await supervisor.stop() is True
        assert await supervisor.stop() is False
        assert supervisor.state == "stopped"
        assert supervisor.ticks >= 1
        assert supervisor.last_tick_at is not None

    asyncio.run(run())
    assert worker.ticks >= 1


def test_failed_ticks_back_off_with_jitter_and_recover() -> None:
    sleeps: list[float] = []

    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) >= 4:
            raise StopLoop

    supervisor = WorkerSupervisor(FakeWorker(failures=3), interval_seconds=1.0, max_backoff_seconds=5.0, sleep=sleep)

    with pytest.raises(StopLoop):
        asyncio.run(supervisor.run_forever())

    assert 2.0 <= sleeps[0] <= 2.5
    assert sleeps[0] * 2.0 <= sleeps[1] <= 5.0
    assert sleeps[2] == 5.0
    assert sleeps[3] == 1.0
    assert supervisor.ticks == 1
    assert supervisor.last_error is None

from __future__ import annotations

import asyncio

import pytest

from autoapply.crawl.rate_governor import RateGovernor


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_min_interval_spaces_consecutive_starts() -> None:
    clock = FakeClock()
    governor = RateGovernor(min_interval_seconds=0.6, reservoir=100, clock=clock, sleep=clock.sleep)
    starts: list[float] = []

    async def call() -> None:
        starts.append(clock.now)

    async def run() -> None:
        for _ in range(3):
            await governor.schedule(call)

    asyncio.run(run())
    assert starts == pytest.approx([0.0, 0.6, 1.2])
    assert clock.sleeps == pytest.approx([0.6, 0.6])


def test_reservoir_waits_for_refill_when_exhausted() -> None:
    clock = FakeClock()
    governor = RateGovernor(
        min_interval_seconds=0.0,
        reservoir=2,
        refresh_interval_seconds=60.0,
        clock=clock,
        sleep=clock.sleep,
    )

    async def call() -> float:
        return clock.now

    async def run() -> list[float]:
        return [await governor.schedule(call) for _ in range(3)]

    starts = asyncio.run(run())
    assert starts == pytest.approx([0.0, 0.0, 60.0])
    assert governor.tokens == 1


def test_concurrency_never_exceeds_limit() -> None:
    governor = RateGovernor(max_concurrent=2, min_interval_seconds=0.0, reservoir=100)
    peak = 0

    async def call() -> None:
        nonlocal peak
        peak = max(peak, governor.running)
        await asyncio.sleep(0.01)

    async def run() -> None:
        await asyncio.gather(*(governor.schedule(call) for _ in range(6)))

    asyncio.run(run())
    assert peak == 2
    assert governor.running == 0


def test_schedule_propagates_errors_and_releases_slot() -> None:
    governor = RateGovernor(max_concurrent=1, min_interval_seconds=0.0)

    async def boom() -> None:
        raise RuntimeError("upstream broke")

    async def run() -> None:
        with pytest.raises(RuntimeError):
            await governor.schedule(boom)
        assert governor.running == 0

    asyncio.run(run())

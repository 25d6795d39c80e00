from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("AA_OTEL_ENABLED", "false")
os.environ.setdefault("AA_WORKER_AUTOSTART", "false")

from autoapply.services.repository import JobRecord, UserProfileRecord, UserRecord  # noqa: E402
from autoapply.services.store import InMemoryStore  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


def add_user(
    store: InMemoryStore,
    user_id: int = 1,
    *,
    plan: str = "free",
    enabled: bool = True,
    profile: UserProfileRecord | None = None,
) -> UserRecord:
    user = UserRecord(
        id=user_id,
        email=f"user{user_id}@example.com",
        full_name="Ada Lovelace",
        phone="+44 20 7946 0000",
        subscription_plan=plan,
        is_auto_apply_enabled=enabled,
    )
    return store.add_user(user, profile or UserProfileRecord(user_id=user_id))


async def add_job(store: InMemoryStore, user_id: int = 1, *, title: str = "Data Engineer") -> JobRecord:
    return await store.create_job(
        user_id=user_id,
        title=title,
        company="Analytical Engines",
        link="https://jobs.example.com/view/ABC123",
        external_job_id="ABC123",
    )


async def add_applied_jobs(store: InMemoryStore, count: int, applied_at: datetime, user_id: int = 1) -> None:
    for _ in range(count):
        job = await add_job(store, user_id)
        await store.set_job_application_state(job.id, application_status="applied", applied_at=applied_at)

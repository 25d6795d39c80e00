from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from autoapply.core.tiers import TierPolicy, tier_for_plan
from autoapply.services.repository import ApplyRepository, UserRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class QuotaSnapshot:
    tier: TierPolicy
    applied_today: int
    window_start: datetime
    next_reset: datetime

    @property
    def daily_limit(self) -> int:
        return self.tier.daily_limit

    @property
    def remaining(self) -> int:
        return max(0, self.tier.daily_limit - self.applied_today)

    @property
    def exhausted(self) -> bool:
        return self.applied_today >= self.tier.daily_limit


class QuotaManager:
    """Daily application quota per user, recomputed from storage on every call."""

    def __init__(
        self,
        repository: ApplyRepository,
        *,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self.timezone = ZoneInfo(timezone_name)
        self._clock = clock

    def window_start(self, now: datetime | None = None) -> datetime:
        local_now = (now or self._clock()).astimezone(self.timezone)
        return datetime.combine(local_now.date(), time.min, tzinfo=self.timezone)

    def next_reset(self, now: datetime | None = None) -> datetime:
        start = self.window_start(now)
        next_day = start.date() + timedelta(days=1)
        return datetime.combine(next_day, time.min, tzinfo=self.timezone)

    def day_key(self, now: datetime | None = None) -> str:
        return self.window_start(now).date().isoformat()

    async def snapshot(self, user: UserRecord) -> QuotaSnapshot:
        now = self._clock()
        start = self.window_start(now)
        applied = await self._repository.get_jobs_applied_today(user.id, start)
        return QuotaSnapshot(
            tier=tier_for_plan(user.subscription_plan),
            applied_today=applied,
            window_start=start,
            next_reset=self.next_reset(now),
        )

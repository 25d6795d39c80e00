from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

TierName = Literal["gold", "silver", "two_weeks", "free"]


@dataclass(frozen=True, slots=True)
class TierPolicy:
    name: TierName
    daily_limit: int
    apply_delay_seconds: float
    queue_priority: int


GOLD = TierPolicy(name="gold", daily_limit=100, apply_delay_seconds=1.0, queue_priority=100)
SILVER = TierPolicy(name="silver", daily_limit=40, apply_delay_seconds=3.0, queue_priority=50)
TWO_WEEKS = TierPolicy(name="two_weeks", daily_limit=20, apply_delay_seconds=3.0, queue_priority=50)
FREE = TierPolicy(name="free", daily_limit=5, apply_delay_seconds=5.0, queue_priority=10)

_PLAN_TIERS: dict[str, TierPolicy] = {
    "gold": GOLD,
    "one_month_gold": GOLD,
    "three_months_gold": GOLD,
    "one_month_silver": SILVER,
    "silver": SILVER,
    "two_weeks": TWO_WEEKS,
    "free": FREE,
}


def tier_for_plan(plan: str | None) -> TierPolicy:
    """Map a subscription plan name onto its policy; unknown plans get the free tier."""
    if not plan:
        return FREE
    return _PLAN_TIERS.get(plan.strip().lower(), FREE)

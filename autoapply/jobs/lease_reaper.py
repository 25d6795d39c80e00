from __future__ import annotations

from datetime import datetime, timedelta, timezone

from autoapply.services.repository import QueueItemRecord


def claim_expired(item: QueueItemRecord, lease_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return item.updated_at + timedelta(seconds=lease_seconds) <= now


def should_requeue(item: QueueItemRecord, lease_seconds: int, now: datetime | None = None) -> bool:
    """A claim is stale when it never reached the automation worker and its lease ran out."""
    return item.status == "processing" and item.submitted_at is None and claim_expired(item, lease_seconds, now=now)


def stale_cutoff(lease_seconds: int, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=lease_seconds)

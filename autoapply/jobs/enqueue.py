from __future__ import annotations

import logging

from autoapply.core.tiers import tier_for_plan
from autoapply.services.repository import ApplyRepository, QueueItemRecord, UserRecord

logger = logging.getLogger(__name__)


async def enqueue_jobs_for_user(
    repository: ApplyRepository,
    user: UserRecord,
    job_ids: list[int],
) -> list[QueueItemRecord]:
    """Queue jobs for application at the user's tier priority; jobs already in flight are ignored."""
    if not job_ids:
        return []
    tier = tier_for_plan(user.subscription_plan)
    items = await repository.enqueue_jobs(user.id, job_ids, priority=tier.queue_priority)
    for item in items:
        await repository.create_audit_log(
            user_id=user.id,
            job_id=item.job_id,
            status="Queued",
            message=f"Job queued for auto-apply with priority {item.priority}",
        )
    logger.info("enqueued jobs user_id=%s requested=%s created=%s", user.id, len(job_ids), len(items))
    return items

from __future__ import annotations

import logging
from datetime import datetime

from autoapply.core.urls import posting_id
from autoapply.crawl.link_cleanup import find_duplicate_link_ids
from autoapply.services.repository import ApplyRepository, JobLinkRecord, NewJobLink

logger = logging.getLogger(__name__)


class LinkQueueStore:
    """Durable queue of discovered posting links awaiting detail processing.

    Links are keyed by (user, posting ID); re-adding a known posting is a no-op.
    """

    def __init__(self, repository: ApplyRepository) -> None:
        self._repository = repository

    async def add_links(
        self,
        user_id: int,
        urls: list[str],
        *,
        priority: float = 1.0,
        source_query: str | None = None,
    ) -> int:
        links: list[NewJobLink] = []
        for url in urls:
            external_id = posting_id(url)
            if not external_id:
                continue
            links.append(NewJobLink(url=url, external_job_id=external_id, priority=priority, source_query=source_query))
        if not links:
            return 0
        inserted = await self._repository.add_job_links(user_id, links)
        logger.info("stored job links user_id=%s offered=%s inserted=%s", user_id, len(links), inserted)
        return inserted

    async def next_links(self, user_id: int, limit: int) -> list[JobLinkRecord]:
        return await self._repository.get_next_job_links_to_process(user_id, limit)

    async def users_with_pending_links(self) -> list[int]:
        return await self._repository.list_user_ids_with_pending_links()

    async def mark_processed(self, link_id: int) -> None:
        await self._repository.mark_job_link_as_processed(link_id)

    async def mark_throttled(self, link_id: int, message: str) -> None:
        await self._repository.update_job_link(link_id, status="pending", error=f"Throttled: {message}")

    async def release(self, link_id: int, error: str) -> None:
        await self._repository.update_job_link(link_id, status="pending", error=error)

    async def requeue_stale(self, older_than: datetime) -> int:
        requeued = await self._repository.requeue_stale_job_links(older_than)
        if requeued:
            logger.info("requeued stale job links count=%s", requeued)
        return requeued

    async def mark_failed(self, link_id: int, error: str) -> None:
        await self._repository.update_job_link(link_id, status="failed", error=error)

    async def mark_gone(self, link: JobLinkRecord) -> int:
        demoted = await self._repository.demote_job_links_by_external_id(link.external_job_id)
        await self._repository.update_job_link(link.id, status="failed", error="Posting no longer available (410)")
        return demoted

    async def demote_duplicates(self) -> int:
        links = await self._repository.list_active_job_links()
        duplicate_ids = find_duplicate_link_ids(links)
        if not duplicate_ids:
            logger.info("no duplicate job links to demote")
            return 0
        demoted = await self._repository.demote_job_links(duplicate_ids)
        logger.info("demoted duplicate job links count=%s", demoted)
        return demoted

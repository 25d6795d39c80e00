from __future__ import annotations

import logging

from autoapply.core.errors import RateLimitedError, ResourceGoneError
from autoapply.crawl.details import PostingDetailFetcher
from autoapply.crawl.scoring import KeywordMatchScorer, MatchScorer
from autoapply.jobs.enqueue import enqueue_jobs_for_user
from autoapply.jobs.quota import QuotaManager
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import ApplyRepository, JobLinkRecord, UserProfileRecord, UserRecord

logger = logging.getLogger(__name__)


class LinkProcessor:
    """Turns pending discovered links into tracked jobs and queues the good matches."""

    def __init__(
        self,
        repository: ApplyRepository,
        link_queue: LinkQueueStore,
        detail_fetcher: PostingDetailFetcher,
        quota: QuotaManager,
        *,
        scorer: MatchScorer | None = None,
        batch_size: int = 5,
    ) -> None:
        self._repository = repository
        self._link_queue = link_queue
        self._detail_fetcher = detail_fetcher
        self._quota = quota
        self._scorer = scorer or KeywordMatchScorer()
        self.batch_size = max(1, batch_size)

    async def run_once(self) -> int:
        enqueued = 0
        for user_id in await self._link_queue.users_with_pending_links():
            try:
                enqueued += await self.process_user(user_id)
            except Exception:
                logger.exception("link processing failed user_id=%s", user_id)
        return enqueued

    async def process_user(self, user_id: int) -> int:
        user = await self._repository.get_user(user_id)
        if user is None or not user.is_auto_apply_enabled:
            return 0
        snapshot = await self._quota.snapshot(user)
        if snapshot.exhausted:
            return 0

        links = await self._link_queue.next_links(user_id, min(self.batch_size, snapshot.remaining))
        profile = await self._repository.get_user_profile(user_id)
        enqueued = 0
        for link in links:
            try:
                enqueued += await self._process_link(user, profile, link)
            except Exception as exc:
                logger.exception("job link processing failed link_id=%s", link.id)
                await self._link_queue.release(link.id, f"Processing error: {exc}")
        return enqueued

    async def _process_link(
        self,
        user: UserRecord,
        profile: UserProfileRecord | None,
        link: JobLinkRecord,
    ) -> int:
        """Handle one claimed link; it is marked processed only after its job is stored and queued."""
        try:
            detail = await self._detail_fetcher.fetch(link.url)
        except RateLimitedError as exc:
            await self._link_queue.mark_throttled(link.id, f"retry after {exc.retry_after:.0f}s")
            logger.info("job link throttled link_id=%s retry_after=%.0fs", link.id, exc.retry_after)
            return 0
        except ResourceGoneError:
            demoted = await self._link_queue.mark_gone(link)
            logger.info("job link gone link_id=%s external_id=%s demoted=%s", link.id, link.external_job_id, demoted)
            return 0
        except Exception as exc:
            await self._link_queue.mark_failed(link.id, str(exc) or exc.__class__.__name__)
            logger.warning("job link failed link_id=%s error=%s", link.id, exc)
            return 0

        score = await self._scorer.score(detail, profile)
        job = await self._repository.create_job(
            user_id=user.id,
            title=detail.title,
            company=detail.company,
            link=detail.url,
            external_job_id=detail.external_job_id,
            location=detail.location,
            description=detail.description,
            match_score=score,
            source="job_links",
        )

        enqueued = 0
        threshold = profile.match_score_threshold if profile is not None else 0
        if score < threshold:
            logger.info("job below match threshold job_id=%s score=%.1f threshold=%s", job.id, score, threshold)
        else:
            enqueued = len(await enqueue_jobs_for_user(self._repository, user, [job.id]))
        await self._link_queue.mark_processed(link.id)
        return enqueued

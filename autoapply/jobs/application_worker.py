from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from opentelemetry import trace

from autoapply.jobs.lease_reaper import stale_cutoff
from autoapply.jobs.link_processor import LinkProcessor
from autoapply.jobs.quota import QuotaManager
from autoapply.jobs.submission import ApplicationSubmitter, SubmissionResult
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import (
    ApplyRepository,
    JobRecord,
    QueueItemRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REACTIVATED_MESSAGE = "Job reactivated after daily application limit reset"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def standby_message(daily_limit: int) -> str:
    return f"Daily limit of {daily_limit} applications reached. Will resume after midnight reset."


@dataclass(slots=True)
class TickReport:
    reactivated: int = 0
    requeued_stale: int = 0
    requeued_links: int = 0
    links_enqueued: int = 0
    duplicates_demoted: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def record(self, status: str) -> None:
        self.outcomes[status] = self.outcomes.get(status, 0) + 1

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())


class ApplicationQueueWorker:
    """One tick drains a batch of the application queue under per-user daily quotas.

    Order of a tick: daily duplicate-link cleanup, stale claim requeue, standby
    reactivation, link intake, then the batch itself. Items are taken by
    descending priority, oldest first within a priority.
    """

    def __init__(
        self,
        repository: ApplyRepository,
        quota: QuotaManager,
        submitter: ApplicationSubmitter,
        *,
        link_processor: LinkProcessor | None = None,
        link_queue: LinkQueueStore | None = None,
        batch_size: int = 5,
        pacing_mode: Literal["item", "batch"] = "item",
        processing_lease_seconds: int = 1800,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._quota = quota
        self._submitter = submitter
        self._link_processor = link_processor
        self._link_queue = link_queue
        self.batch_size = max(1, batch_size)
        self.pacing_mode = pacing_mode
        self.processing_lease_seconds = processing_lease_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_cleanup_day: str | None = None

    async def run_tick(self) -> TickReport:
        report = TickReport()
        with tracer.start_as_current_span("worker.tick"):
            report.duplicates_demoted = await self._daily_cleanup()
            cutoff = stale_cutoff(self.processing_lease_seconds, now=self._clock())
            report.requeued_stale = await self._repository.requeue_stale_processing(cutoff)
            if report.requeued_stale:
                logger.info("requeued stale processing items: %s", report.requeued_stale)
            if self._link_queue is not None:
                report.requeued_links = await self._link_queue.requeue_stale(cutoff)
            report.reactivated = await self.reactivate_standby()
            if self._link_processor is not None:
                report.links_enqueued = await self._link_processor.run_once()

            items = await self._repository.get_next_queued_jobs(self.batch_size)
            batch_delay = 0.0
            for index, item in enumerate(items):
                status, delay = await self.process_item(item)
                report.record(status)
                if not delay:
                    continue
                if self.pacing_mode == "batch":
                    batch_delay = max(batch_delay, delay)
                elif index < len(items) - 1:
                    await self._sleep(delay)
            if batch_delay:
                await self._sleep(batch_delay)

        if items:
            logger.info("worker tick processed=%s outcomes=%s", report.processed, report.outcomes)
        return report

    async def process_item(self, item: QueueItemRecord) -> tuple[str, float]:
        """Process one queue item; returns its resulting status and the pacing delay it earned."""
        with tracer.start_as_current_span("worker.process_item") as span:
            span.set_attribute("queue.id", item.id)
            span.set_attribute("queue.user_id", item.user_id)
            try:
                claimed = await self._repository.update_queued_job(
                    item.id,
                    status="processing",
                    error=None,
                    increment_attempt=True,
                )
                user = await self._repository.get_user(item.user_id)
                job = await self._repository.get_job(item.job_id)
                if user is None or job is None:
                    await self._finish(claimed, "failed", "Failed", "User or job not found")
                    return "failed", 0.0

                if not user.is_auto_apply_enabled:
                    await self._finish(claimed, "skipped", "Skipped", "Auto-apply is disabled for this user")
                    return "skipped", 0.0

                snapshot = await self._quota.snapshot(user)
                if snapshot.exhausted:
                    message = standby_message(snapshot.daily_limit)
                    await self._finish(claimed, "standby", "Standby", message)
                    logger.info(
                        "daily limit reached user_id=%s applied_today=%s limit=%s",
                        user.id,
                        snapshot.applied_today,
                        snapshot.daily_limit,
                    )
                    return "standby", 0.0

                result = await self._submitter.submit(user, job)
                status = await self._apply_result(claimed, job, result)
                return status, snapshot.tier.apply_delay_seconds
            except Exception as exc:
                logger.exception("queue item failed id=%s", item.id)
                await self._finish(item, "failed", "Failed", f"Error processing job: {exc}")
                return "failed", 0.0

    async def reactivate_standby(self) -> int:
        """Return standby items to the ready state, oldest first, up to each user's remaining quota."""
        reactivated = 0
        for user_id in await self._repository.list_user_ids_with_queue_status("standby"):
            user = await self._repository.get_user(user_id)
            if user is None:
                continue
            snapshot = await self._quota.snapshot(user)
            if snapshot.remaining <= 0:
                continue
            standby = await self._repository.get_queued_jobs_for_user(user_id, ("standby",))
            for item in standby[: snapshot.remaining]:
                await self._repository.update_queued_job(item.id, status="pending", error=None)
                await self._repository.create_audit_log(
                    user_id=user_id,
                    job_id=item.job_id,
                    status="Reactivated",
                    message=REACTIVATED_MESSAGE,
                )
                reactivated += 1
            logger.info(
                "reactivated standby items user_id=%s count=%s remaining=%s",
                user_id,
                min(len(standby), snapshot.remaining),
                snapshot.remaining,
            )
        return reactivated

    async def record_async_outcome(
        self,
        queue_id: int,
        outcome: Literal["success", "skipped", "error"],
        message: str | None = None,
    ) -> QueueItemRecord:
        """Finalize an item the automation worker accepted for asynchronous completion."""
        item = await self._repository.get_queued_job(queue_id)
        if item is None:
            raise RepositoryNotFoundError(f"queue item {queue_id} not found")
        if item.status != "processing" or item.submitted_at is None:
            raise RepositoryConflictError("queue item is not awaiting an asynchronous outcome")
        job = await self._repository.get_job(item.job_id)
        if job is None:
            raise RepositoryNotFoundError(f"job {item.job_id} not found")

        await self._apply_result(item, job, SubmissionResult(outcome=outcome, message=message or ""))
        updated = await self._repository.get_queued_job(queue_id)
        if updated is None:
            raise RepositoryNotFoundError(f"queue item {queue_id} not found")
        return updated

    async def _apply_result(self, item: QueueItemRecord, job: JobRecord, result: SubmissionResult) -> str:
        now = self._clock()
        label = f"{job.title} at {job.company}" if job.company else job.title
        if result.outcome == "success":
            await self._repository.set_job_application_state(
                job.id,
                application_status="applied",
                applied_at=job.applied_at or now,
            )
            await self._finish(item, "completed", "Applied", result.message or f"Successfully applied to {label}")
            return "completed"

        if result.outcome == "processing":
            await self._repository.set_job_application_state(job.id, application_status="processing", applied_at=now)
            await self._repository.update_queued_job(item.id, status="processing", error=None, mark_submitted=True)
            await self._repository.create_audit_log(
                user_id=item.user_id,
                job_id=item.job_id,
                status="Processing",
                message=result.message or f"Application for {label} accepted for processing",
            )
            return "processing"

        await self._repository.set_job_application_state(
            job.id,
            application_status="skipped" if result.outcome == "skipped" else "failed",
            applied_at=None,
        )
        if result.outcome == "skipped":
            await self._finish(item, "skipped", "Skipped", result.message or f"Skipped {label}")
            return "skipped"
        await self._finish(item, "failed", "Failed", result.message or f"Failed to apply to {label}")
        return "failed"

    async def _finish(self, item: QueueItemRecord, status: str, audit_status: str, message: str) -> None:
        await self._repository.update_queued_job(item.id, status=status, error=None if status == "completed" else message)
        await self._repository.create_audit_log(
            user_id=item.user_id,
            job_id=item.job_id,
            status=audit_status,
            message=message,
        )

    async def _daily_cleanup(self) -> int:
        if self._link_queue is None:
            return 0
        day = self._quota.day_key(self._clock())
        if day == self._last_cleanup_day:
            return 0
        self._last_cleanup_day = day
        return await self._link_queue.demote_duplicates()

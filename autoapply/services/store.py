from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from typing import Callable

from autoapply.jobs.lease_reaper import should_requeue
from autoapply.services.repository import (
    LINK_STATUSES,
    QUEUE_STATUSES,
    READY_QUEUE_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    AuditLogRecord,
    JobLinkRecord,
    JobRecord,
    NewJobLink,
    QueueItemRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    UserProfileRecord,
    UserRecord,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local repository used when no database is configured and in tests."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._ids = count(1)
        self.users: dict[int, UserRecord] = {}
        self.profiles: dict[int, UserProfileRecord] = {}
        self.jobs: dict[int, JobRecord] = {}
        self.queue: dict[int, QueueItemRecord] = {}
        self.links: dict[int, JobLinkRecord] = {}
        self.audit_logs: list[AuditLogRecord] = []

    async def close(self) -> None:
        return None

    def add_user(self, user: UserRecord, profile: UserProfileRecord | None = None) -> UserRecord:
        self.users[user.id] = user
        if profile is not None:
            self.profiles[user.id] = profile
        return user

    async def get_user(self, user_id: int) -> UserRecord | None:
        return self.users.get(user_id)

    async def get_user_profile(self, user_id: int) -> UserProfileRecord | None:
        return self.profiles.get(user_id)

    async def get_job(self, job_id: int) -> JobRecord | None:
        return self.jobs.get(job_id)

    async def create_job(
        self,
        *,
        user_id: int,
        title: str,
        company: str | None,
        link: str | None,
        external_job_id: str | None = None,
        location: str | None = None,
        description: str | None = None,
        match_score: float | None = None,
        source: str | None = None,
    ) -> JobRecord:
        now = self._clock()
        job = JobRecord(
            id=next(self._ids),
            user_id=user_id,
            title=title,
            company=company,
            link=link,
            external_job_id=external_job_id,
            location=location,
            description=description,
            match_score=match_score,
            source=source,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return job

    async def set_job_application_state(
        self,
        job_id: int,
        *,
        application_status: str | None,
        applied_at: datetime | None,
    ) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError(f"job {job_id} not found")
        job.application_status = application_status
        job.applied_at = applied_at
        job.updated_at = self._clock()
        return job

    async def get_jobs_applied_today(self, user_id: int, since: datetime) -> int:
        return sum(
            1
            for job in self.jobs.values()
            if job.user_id == user_id and job.applied_at is not None and job.applied_at >= since
        )

    async def enqueue_jobs(self, user_id: int, job_ids: list[int], *, priority: int) -> list[QueueItemRecord]:
        active = {
            item.job_id
            for item in self.queue.values()
            if item.user_id == user_id and item.status not in TERMINAL_QUEUE_STATUSES
        }
        created: list[QueueItemRecord] = []
        for job_id in job_ids:
            if job_id in active:
                continue
            now = self._clock()
            item = QueueItemRecord(
                id=next(self._ids),
                user_id=user_id,
                job_id=job_id,
                priority=priority,
                status="queued",
                created_at=now,
                updated_at=now,
            )
            self.queue[item.id] = item
            active.add(job_id)
            created.append(replace(item))
        return created

    async def get_queued_jobs_for_user(
        self,
        user_id: int,
        statuses: tuple[str, ...] | None = None,
    ) -> list[QueueItemRecord]:
        items = [
            item
            for item in self.queue.values()
            if item.user_id == user_id and (not statuses or item.status in statuses)
        ]
        items.sort(key=lambda item: (item.created_at, item.id))
        return [replace(item) for item in items]

    async def get_next_queued_jobs(self, limit: int) -> list[QueueItemRecord]:
        items = [item for item in self.queue.values() if item.status in READY_QUEUE_STATUSES]
        items.sort(key=lambda item: (-item.priority, item.created_at, item.id))
        return [replace(item) for item in items[: max(1, limit)]]

    async def update_queued_job(
        self,
        queue_id: int,
        *,
        status: str,
        error: str | None = None,
        increment_attempt: bool = False,
        mark_submitted: bool = False,
    ) -> QueueItemRecord:
        if status not in QUEUE_STATUSES:
            raise RepositoryConflictError(f"unknown queue status {status}")
        item = self.queue.get(queue_id)
        if item is None:
            raise RepositoryNotFoundError(f"queue item {queue_id} not found")
        now = self._clock()
        item.status = status
        item.error = error
        item.updated_at = now
        if increment_attempt:
            item.attempt_count += 1
        if mark_submitted:
            item.submitted_at = now
        if status in TERMINAL_QUEUE_STATUSES:
            item.processed_at = now
        return replace(item)

    async def get_queued_job(self, queue_id: int) -> QueueItemRecord | None:
        item = self.queue.get(queue_id)
        return replace(item) if item is not None else None

    async def list_user_ids_with_queue_status(self, status: str) -> list[int]:
        return sorted({item.user_id for item in self.queue.values() if item.status == status})

    async def count_queue_by_status(self, user_id: int) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.queue.values():
            if item.user_id == user_id:
                counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    async def requeue_stale_processing(self, older_than: datetime, limit: int = 100) -> int:
        stale = [item for item in self.queue.values() if should_requeue(item, 0, now=older_than)]
        stale.sort(key=lambda item: item.updated_at)
        for item in stale[: max(1, limit)]:
            item.status = "pending"
            item.error = "requeued after stale processing claim"
            item.updated_at = self._clock()
        return min(len(stale), max(1, limit))

    async def add_job_links(self, user_id: int, links: list[NewJobLink]) -> int:
        existing = {link.external_job_id for link in self.links.values() if link.user_id == user_id}
        inserted = 0
        for link in links:
            if link.external_job_id in existing:
                continue
            now = self._clock()
            record = JobLinkRecord(
                id=next(self._ids),
                user_id=user_id,
                url=link.url,
                external_job_id=link.external_job_id,
                status="pending",
                priority=link.priority,
                attempts=0,
                created_at=now,
                updated_at=now,
                source_query=link.source_query,
            )
            self.links[record.id] = record
            existing.add(link.external_job_id)
            inserted += 1
        return inserted

    async def get_next_job_links_to_process(self, user_id: int, limit: int) -> list[JobLinkRecord]:
        candidates = [
            link
            for link in self.links.values()
            if link.user_id == user_id and link.status == "pending" and link.priority > 0
        ]
        candidates.sort(key=lambda link: (-link.priority, link.created_at, link.id))
        claimed: list[JobLinkRecord] = []
        for link in candidates[: max(1, limit)]:
            link.status = "processing"
            link.attempts += 1
            link.updated_at = self._clock()
            claimed.append(replace(link))
        return claimed

    async def list_user_ids_with_pending_links(self) -> list[int]:
        return sorted({link.user_id for link in self.links.values() if link.status == "pending" and link.priority > 0})

    async def requeue_stale_job_links(self, older_than: datetime, limit: int = 100) -> int:
        stale = [link for link in self.links.values() if link.status == "processing" and link.updated_at <= older_than]
        stale.sort(key=lambda link: link.updated_at)
        for link in stale[: max(1, limit)]:
            link.status = "pending"
            link.error = "requeued after stale processing claim"
            link.updated_at = self._clock()
        return min(len(stale), max(1, limit))

    async def mark_job_link_as_processed(self, link_id: int) -> None:
        link = self._link(link_id)
        now = self._clock()
        link.status = "completed"
        link.error = None
        link.processed_at = now
        link.updated_at = now

    async def update_job_link(
        self,
        link_id: int,
        *,
        status: str,
        error: str | None = None,
        priority: float | None = None,
    ) -> None:
        if status not in LINK_STATUSES:
            raise RepositoryConflictError(f"unknown link status {status}")
        link = self._link(link_id)
        link.status = status
        link.error = error
        if priority is not None:
            link.priority = priority
        link.updated_at = self._clock()

    async def demote_job_links_by_external_id(self, external_job_id: str) -> int:
        demoted = 0
        for link in self.links.values():
            if link.external_job_id == external_job_id:
                link.priority = 0.0
                link.updated_at = self._clock()
                demoted += 1
        return demoted

    async def demote_job_links(self, link_ids: list[int]) -> int:
        demoted = 0
        for link_id in link_ids:
            link = self.links.get(link_id)
            if link is None:
                continue
            link.priority = 0.0
            link.updated_at = self._clock()
            demoted += 1
        return demoted

    async def list_active_job_links(self, limit: int = 10000) -> list[JobLinkRecord]:
        active = sorted((link for link in self.links.values() if link.priority > 0), key=lambda link: link.id)
        return [replace(link) for link in active[: max(1, limit)]]

    async def create_audit_log(
        self,
        *,
        user_id: int,
        status: str,
        message: str,
        job_id: int | None = None,
    ) -> AuditLogRecord:
        entry = AuditLogRecord(
            id=next(self._ids),
            user_id=user_id,
            job_id=job_id,
            status=status,
            message=message,
            created_at=self._clock(),
        )
        self.audit_logs.append(entry)
        return entry

    async def list_audit_logs(self, user_id: int, *, limit: int = 20, offset: int = 0) -> list[AuditLogRecord]:
        entries = [entry for entry in self.audit_logs if entry.user_id == user_id]
        entries.sort(key=lambda entry: (entry.created_at, entry.id), reverse=True)
        return entries[max(0, offset) : max(0, offset) + max(1, min(limit, 200))]

    def _link(self, link_id: int) -> JobLinkRecord:
        link = self.links.get(link_id)
        if link is None:
            raise RepositoryNotFoundError(f"job link {link_id} not found")
        return link

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Literal, Protocol

import asyncpg  # type: ignore[import-untyped]

from autoapply.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


QueueStatus = Literal["queued", "pending", "processing", "completed", "failed", "skipped", "standby"]
LinkStatus = Literal["pending", "processing", "completed", "failed"]

QUEUE_STATUSES = {"queued", "pending", "processing", "completed", "failed", "skipped", "standby"}
READY_QUEUE_STATUSES = ("queued", "pending")
TERMINAL_QUEUE_STATUSES = {"completed", "failed", "skipped"}
LINK_STATUSES = {"pending", "processing", "completed", "failed"}


@dataclass(slots=True)
class UserRecord:
    id: int
    email: str
    full_name: str | None = None
    phone: str | None = None
    subscription_plan: str | None = None
    is_auto_apply_enabled: bool = False


@dataclass(slots=True)
class UserProfileRecord:
    user_id: int
    full_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    linkedin_profile: str | None = None
    github_profile: str | None = None
    personal_website: str | None = None
    portfolio_link: str | None = None
    job_titles_of_interest: list[str] = field(default_factory=list)
    locations_of_interest: list[str] = field(default_factory=list)
    workplace_of_interest: list[str] = field(default_factory=list)
    job_experience_level: list[str] = field(default_factory=list)
    excluded_companies: list[str] = field(default_factory=list)
    preferred_work_arrangement: str | None = None
    job_title: str | None = None
    location: str | None = None
    match_score_threshold: int = 70


@dataclass(slots=True)
class JobRecord:
    id: int
    user_id: int
    title: str
    company: str | None
    link: str | None
    external_job_id: str | None = None
    location: str | None = None
    description: str | None = None
    match_score: float | None = None
    source: str | None = None
    application_status: str | None = None
    applied_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class QueueItemRecord:
    id: int
    user_id: int
    job_id: int
    priority: int
    status: str
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None
    submitted_at: datetime | None = None
    error: str | None = None
    attempt_count: int = 0


@dataclass(slots=True)
class NewJobLink:
    url: str
    external_job_id: str
    priority: float = 1.0
    source_query: str | None = None


@dataclass(slots=True)
class JobLinkRecord:
    id: int
    user_id: int
    url: str
    external_job_id: str
    status: str
    priority: float
    attempts: int
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None
    error: str | None = None
    source_query: str | None = None


@dataclass(slots=True)
class AuditLogRecord:
    id: int
    user_id: int
    job_id: int | None
    status: str
    message: str
    created_at: datetime


class ApplyRepository(Protocol):
    """Storage operations used by the crawler, the queue worker and the API."""

    async def close(self) -> None: ...

    async def get_user(self, user_id: int) -> UserRecord | None: ...

    async def get_user_profile(self, user_id: int) -> UserProfileRecord | None: ...

    async def get_job(self, job_id: int) -> JobRecord | None: ...

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
    ) -> JobRecord: ...

    async def set_job_application_state(
        self,
        job_id: int,
        *,
        application_status: str | None,
        applied_at: datetime | None,
    ) -> JobRecord: ...

    async def get_jobs_applied_today(self, user_id: int, since: datetime) -> int: ...

    async def enqueue_jobs(self, user_id: int, job_ids: list[int], *, priority: int) -> list[QueueItemRecord]: ...

    async def get_queued_jobs_for_user(
        self,
        user_id: int,
        statuses: tuple[str, ...] | None = None,
    ) -> list[QueueItemRecord]: ...

    async def get_next_queued_jobs(self, limit: int) -> list[QueueItemRecord]: ...

    async def update_queued_job(
        self,
        queue_id: int,
        *,
        status: str,
        error: str | None = None,
        increment_attempt: bool = False,
        mark_submitted: bool = False,
    ) -> QueueItemRecord: ...

    async def get_queued_job(self, queue_id: int) -> QueueItemRecord | None: ...

    async def list_user_ids_with_queue_status(self, status: str) -> list[int]: ...

    async def count_queue_by_status(self, user_id: int) -> dict[str, int]: ...

    async def requeue_stale_processing(self, older_than: datetime, limit: int = 100) -> int: ...

    async def add_job_links(self, user_id: int, links: list[NewJobLink]) -> int: ...

    async def get_next_job_links_to_process(self, user_id: int, limit: int) -> list[JobLinkRecord]: ...

    async def list_user_ids_with_pending_links(self) -> list[int]: ...

    async def requeue_stale_job_links(self, older_than: datetime, limit: int = 100) -> int: ...

    async def mark_job_link_as_processed(self, link_id: int) -> None: ...

    async def update_job_link(
        self,
        link_id: int,
        *,
        status: str,
        error: str | None = None,
        priority: float | None = None,
    ) -> None: ...

    async def demote_job_links_by_external_id(self, external_job_id: str) -> int: ...

    async def demote_job_links(self, link_ids: list[int]) -> int: ...

    async def list_active_job_links(self, limit: int = 10000) -> list[JobLinkRecord]: ...

    async def create_audit_log(
        self,
        *,
        user_id: int,
        status: str,
        message: str,
        job_id: int | None = None,
    ) -> AuditLogRecord: ...

    async def list_audit_logs(self, user_id: int, *, limit: int = 20, offset: int = 0) -> list[AuditLogRecord]: ...


_QUEUE_COLUMNS = """
    id, user_id, job_id, priority, status, created_at, updated_at,
    processed_at, submitted_at, error, attempt_count
"""
_LINK_COLUMNS = """
    id, user_id, url, external_job_id, status, priority, attempts,
    created_at, updated_at, processed_at, error, source_query
"""
_JOB_COLUMNS = """
    id, user_id, title, company, link, external_job_id, location, description,
    match_score, source, application_status, applied_at, created_at, updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_user(self, user_id: int) -> UserRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, email, full_name, phone, subscription_plan, is_auto_apply_enabled
            from users
            where id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return UserRecord(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            phone=row["phone"],
            subscription_plan=row["subscription_plan"],
            is_auto_apply_enabled=bool(row["is_auto_apply_enabled"]),
        )

    async def get_user_profile(self, user_id: int) -> UserProfileRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from user_profiles where user_id = $1", user_id)
        if row is None:
            return None
        return UserProfileRecord(
            user_id=row["user_id"],
            full_name=row["full_name"],
            email=row["email"],
            phone_number=row["phone_number"],
            address=row["address"],
            city=row["city"],
            state=row["state"],
            zip_code=row["zip_code"],
            country=row["country"],
            linkedin_profile=row["linkedin_profile"],
            github_profile=row["github_profile"],
            personal_website=row["personal_website"],
            portfolio_link=row["portfolio_link"],
            job_titles_of_interest=self._coerce_text_list(row["job_titles_of_interest"]),
            locations_of_interest=self._coerce_text_list(row["locations_of_interest"]),
            workplace_of_interest=self._coerce_text_list(row["workplace_of_interest"]),
            job_experience_level=self._coerce_text_list(row["job_experience_level"]),
            excluded_companies=self._coerce_text_list(row["excluded_companies"]),
            preferred_work_arrangement=row["preferred_work_arrangement"],
            job_title=row["job_title"],
            location=row["location"],
            match_score_threshold=row["match_score_threshold"] or 70,
        )

    async def get_job(self, job_id: int) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from job_tracker where id = $1", job_id)
        return self._job_row(row) if row is not None else None

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into job_tracker (
              user_id, title, company, link, external_job_id, location, description, match_score, source
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            returning {_JOB_COLUMNS}
            """,
            user_id,
            title,
            company,
            link,
            external_job_id,
            location,
            description,
            match_score,
            source,
        )
        return self._job_row(row)

    async def set_job_application_state(
        self,
        job_id: int,
        *,
        application_status: str | None,
        applied_at: datetime | None,
    ) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_tracker
            set application_status = $2, applied_at = $3, updated_at = now()
            where id = $1
            returning {_JOB_COLUMNS}
            """,
            job_id,
            application_status,
            applied_at,
        )
        if row is None:
            raise RepositoryNotFoundError(f"job {job_id} not found")
        return self._job_row(row)

    async def get_jobs_applied_today(self, user_id: int, since: datetime) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval(
            """
            select count(*)
            from job_tracker
            where user_id = $1
              and applied_at is not null
              and applied_at >= $2
            """,
            user_id,
            since,
        )
        return int(count or 0)

    async def enqueue_jobs(self, user_id: int, job_ids: list[int], *, priority: int) -> list[QueueItemRecord]:
        if not job_ids:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    insert into job_queue (user_id, job_id, priority, status)
                    select $1, candidate.job_id, $3, 'queued'
                    from unnest($2::bigint[]) as candidate(job_id)
                    where not exists (
                      select 1
                      from job_queue existing
                      where existing.user_id = $1
                        and existing.job_id = candidate.job_id
                        and existing.status not in ('completed', 'failed', 'skipped')
                    )
                    returning {_QUEUE_COLUMNS}
                    """,
                    user_id,
                    job_ids,
                    priority,
                )
        return [self._queue_row(row) for row in rows]

    async def get_queued_jobs_for_user(
        self,
        user_id: int,
        statuses: tuple[str, ...] | None = None,
    ) -> list[QueueItemRecord]:
        pool = await self._get_pool()
        if statuses:
            rows = await pool.fetch(
                f"""
                select {_QUEUE_COLUMNS}
                from job_queue
                where user_id = $1 and status = any($2::text[])
                order by created_at asc, id asc
                """,
                user_id,
                list(statuses),
            )
        else:
            rows = await pool.fetch(
                f"select {_QUEUE_COLUMNS} from job_queue where user_id = $1 order by created_at asc, id asc",
                user_id,
            )
        return [self._queue_row(row) for row in rows]

    async def get_next_queued_jobs(self, limit: int) -> list[QueueItemRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_QUEUE_COLUMNS}
            from job_queue
            where status = any($2::text[])
            order by priority desc, created_at asc, id asc
            limit $1
            """,
            max(1, limit),
            list(READY_QUEUE_STATUSES),
        )
        return [self._queue_row(row) for row in rows]

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_queue
            set
              status = $2,
              error = $3,
              attempt_count = attempt_count + case when $4 then 1 else 0 end,
              submitted_at = case when $5 then now() else submitted_at end,
              processed_at = case when $2 = any($6::text[]) then now() else processed_at end,
              updated_at = now()
            where id = $1
            returning {_QUEUE_COLUMNS}
            """,
            queue_id,
            status,
            error,
            increment_attempt,
            mark_submitted,
            list(TERMINAL_QUEUE_STATUSES),
        )
        if row is None:
            raise RepositoryNotFoundError(f"queue item {queue_id} not found")
        return self._queue_row(row)

    async def get_queued_job(self, queue_id: int) -> QueueItemRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_QUEUE_COLUMNS} from job_queue where id = $1", queue_id)
        return self._queue_row(row) if row is not None else None

    async def list_user_ids_with_queue_status(self, status: str) -> list[int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select distinct user_id from job_queue where status = $1 order by user_id",
            status,
        )
        return [row["user_id"] for row in rows]

    async def count_queue_by_status(self, user_id: int) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select status, count(*) as total from job_queue where user_id = $1 group by status",
            user_id,
        )
        return {row["status"]: int(row["total"]) for row in rows}

    async def requeue_stale_processing(self, older_than: datetime, limit: int = 100) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from job_queue
                      where status = 'processing'
                        and submitted_at is null
                        and updated_at <= $1
                      order by updated_at asc
                      limit $2
                      for update skip locked
                    )
                    update job_queue q
                    set status = 'pending', error = 'requeued after stale processing claim', updated_at = now()
                    from stale s
                    where q.id = s.id
                    returning q.id
                    """,
                    older_than,
                    bounded_limit,
                )
                return len(rows)

    async def add_job_links(self, user_id: int, links: list[NewJobLink]) -> int:
        if not links:
            return 0
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                inserted = 0
                for link in links:
                    row = await conn.fetchrow(
                        """
                        insert into job_links (user_id, url, external_job_id, priority, source_query)
                        values ($1, $2, $3, $4, $5)
                        on conflict (user_id, external_job_id) do nothing
                        returning id
                        """,
                        user_id,
                        link.url,
                        link.external_job_id,
                        link.priority,
                        link.source_query,
                    )
                    if row is not None:
                        inserted += 1
                return inserted

    async def get_next_job_links_to_process(self, user_id: int, limit: int) -> list[JobLinkRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with next_links as (
                      select id
                      from job_links
                      where user_id = $1
                        and status = 'pending'
                        and priority > 0
                      order by priority desc, created_at asc, id asc
                      limit $2
                      for update skip locked
                    )
                    update job_links l
                    set status = 'processing', attempts = l.attempts + 1, updated_at = now()
                    from next_links n
                    where l.id = n.id
                    returning
                      l.id, l.user_id, l.url, l.external_job_id, l.status, l.priority, l.attempts,
                      l.created_at, l.updated_at, l.processed_at, l.error, l.source_query
                    """,
                    user_id,
                    max(1, limit),
                )
        records = [self._link_row(row) for row in rows]
        records.sort(key=lambda record: (-record.priority, record.created_at, record.id))
        return records

    async def list_user_ids_with_pending_links(self) -> list[int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select distinct user_id from job_links where status = 'pending' and priority > 0 order by user_id"
        )
        return [row["user_id"] for row in rows]

    async def requeue_stale_job_links(self, older_than: datetime, limit: int = 100) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from job_links
                      where status = 'processing'
                        and updated_at <= $1
                      order by updated_at asc
                      limit $2
                      for update skip locked
                    )
                    update job_links l
                    set status = 'pending', error = 'requeued after stale processing claim', updated_at = now()
                    from stale s
                    where l.id = s.id
                    returning l.id
                    """,
                    older_than,
                    bounded_limit,
                )
                return len(rows)

    async def mark_job_link_as_processed(self, link_id: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update job_links
            set status = 'completed', error = null, processed_at = now(), updated_at = now()
            where id = $1
            """,
            link_id,
        )

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
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update job_links
            set status = $2, error = $3, priority = coalesce($4, priority), updated_at = now()
            where id = $1
            """,
            link_id,
            status,
            error,
            priority,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"job link {link_id} not found")

    async def demote_job_links_by_external_id(self, external_job_id: str) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            "update job_links set priority = 0, updated_at = now() where external_job_id = $1",
            external_job_id,
        )
        return self._affected(result)

    async def demote_job_links(self, link_ids: list[int]) -> int:
        if not link_ids:
            return 0
        pool = await self._get_pool()
        result = await pool.execute(
            "update job_links set priority = 0, updated_at = now() where id = any($1::bigint[])",
            link_ids,
        )
        return self._affected(result)

    async def list_active_job_links(self, limit: int = 10000) -> list[JobLinkRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_LINK_COLUMNS} from job_links where priority > 0 order by id asc limit $1",
            max(1, limit),
        )
        return [self._link_row(row) for row in rows]

    async def create_audit_log(
        self,
        *,
        user_id: int,
        status: str,
        message: str,
        job_id: int | None = None,
    ) -> AuditLogRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into auto_apply_logs (user_id, job_id, status, message)
            values ($1, $2, $3, $4)
            returning id, user_id, job_id, status, message, created_at
            """,
            user_id,
            job_id,
            status,
            message,
        )
        return self._audit_row(row)

    async def list_audit_logs(self, user_id: int, *, limit: int = 20, offset: int = 0) -> list[AuditLogRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, user_id, job_id, status, message, created_at
            from auto_apply_logs
            where user_id = $1
            order by created_at desc, id desc
            limit $2 offset $3
            """,
            user_id,
            max(1, min(limit, 200)),
            max(0, offset),
        )
        return [self._audit_row(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _affected(result: str) -> int:
        try:
            return int(result.rsplit(" ", maxsplit=1)[-1])
        except ValueError:
            return 0

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value if item]

    @staticmethod
    def _job_row(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            company=row["company"],
            link=row["link"],
            external_job_id=row["external_job_id"],
            location=row["location"],
            description=row["description"],
            match_score=row["match_score"],
            source=row["source"],
            application_status=row["application_status"],
            applied_at=row["applied_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _queue_row(row: asyncpg.Record) -> QueueItemRecord:
        return QueueItemRecord(
            id=row["id"],
            user_id=row["user_id"],
            job_id=row["job_id"],
            priority=row["priority"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            processed_at=row["processed_at"],
            submitted_at=row["submitted_at"],
            error=row["error"],
            attempt_count=row["attempt_count"],
        )

    @staticmethod
    def _link_row(row: asyncpg.Record) -> JobLinkRecord:
        return JobLinkRecord(
            id=row["id"],
            user_id=row["user_id"],
            url=row["url"],
            external_job_id=row["external_job_id"],
            status=row["status"],
            priority=float(row["priority"]),
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            processed_at=row["processed_at"],
            error=row["error"],
            source_query=row["source_query"],
        )

    @staticmethod
    def _audit_row(row: asyncpg.Record) -> AuditLogRecord:
        return AuditLogRecord(
            id=row["id"],
            user_id=row["user_id"],
            job_id=row["job_id"],
            status=row["status"],
            message=row["message"],
            created_at=row["created_at"],
        )


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )

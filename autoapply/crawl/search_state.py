from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

logger = logging.getLogger(__name__)

EFFECTIVENESS_ALPHA = 0.3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class QueryStats:
    empty_page_streak: int = 0
    effectiveness_estimate: float = 0.0
    retry_attempts: int = 0
    pages_fetched: int = 0

    def record_effectiveness(self, score: float) -> float:
        self.effectiveness_estimate = (
            self.effectiveness_estimate * (1 - EFFECTIVENESS_ALPHA) + score * EFFECTIVENESS_ALPHA
        )
        return self.effectiveness_estimate


@dataclass(slots=True)
class QueuedUrl:
    url: str
    priority: float


@dataclass(slots=True)
class DeferredUrl:
    url: str
    priority: float
    not_before: datetime


@dataclass(slots=True)
class SearchState:
    user_id: int
    queue: list[QueuedUrl] = field(default_factory=list)
    deferred: list[DeferredUrl] = field(default_factory=list)
    processed_urls: set[str] = field(default_factory=set)
    seen_posting_ids: set[str] = field(default_factory=set)
    query_stats: dict[str, QueryStats] = field(default_factory=dict)
    failure_counts: dict[str, int] = field(default_factory=dict)
    total_jobs_found: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    def stats_for(self, query: str) -> QueryStats:
        stats = self.query_stats.get(query)
        if stats is None:
            stats = QueryStats()
            self.query_stats[query] = stats
        return stats

    def is_known(self, url: str) -> bool:
        return (
            url in self.processed_urls
            or any(item.url == url for item in self.queue)
            or any(item.url == url for item in self.deferred)
        )

    def push(self, url: str, priority: float) -> bool:
        if self.is_known(url):
            return False
        self.queue.append(QueuedUrl(url=url, priority=priority))
        return True

    def defer(self, url: str, priority: float, not_before: datetime) -> None:
        self.queue = [item for item in self.queue if item.url != url]
        self.deferred = [item for item in self.deferred if item.url != url]
        self.deferred.append(DeferredUrl(url=url, priority=priority, not_before=not_before))

    def promote_due(self, now: datetime) -> int:
        due = [item for item in self.deferred if item.not_before <= now]
        if not due:
            return 0
        self.deferred = [item for item in self.deferred if item.not_before > now]
        for item in due:
            self.queue.append(QueuedUrl(url=item.url, priority=item.priority))
        return len(due)

    def pop_next(self) -> QueuedUrl | None:
        """Remove and return the highest-priority URL not yet processed; ties keep insertion order."""
        self.queue = [item for item in self.queue if item.url not in self.processed_urls]
        if not self.queue:
            return None
        best_index = 0
        for index, item in enumerate(self.queue):
            if item.priority > self.queue[best_index].priority:
                best_index = index
        return self.queue.pop(best_index)

    def has_pending_work(self) -> bool:
        return bool(self.deferred) or any(item.url not in self.processed_urls for item in self.queue)

    def clone(self) -> SearchState:
        return SearchState(
            user_id=self.user_id,
            queue=[QueuedUrl(url=item.url, priority=item.priority) for item in self.queue],
            deferred=[
                DeferredUrl(url=item.url, priority=item.priority, not_before=item.not_before)
                for item in self.deferred
            ],
            processed_urls=set(self.processed_urls),
            seen_posting_ids=set(self.seen_posting_ids),
            query_stats={
                query: QueryStats(
                    empty_page_streak=stats.empty_page_streak,
                    effectiveness_estimate=stats.effectiveness_estimate,
                    retry_attempts=stats.retry_attempts,
                    pages_fetched=stats.pages_fetched,
                )
                for query, stats in self.query_stats.items()
            },
            failure_counts=dict(self.failure_counts),
            total_jobs_found=self.total_jobs_found,
            created_at=self.created_at,
        )


class SearchStateStore:
    """Holds crawl sessions behind opaque tokens for resumable, incremental searches.

    A session is evicted only when it is older than the TTL and has no pending
    work. Callers that mutate a session hold ``lock_for(token)`` so one token has
    at most one writer at a time.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._states: dict[str, SearchState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._states)

    def save(self, state: SearchState) -> str:
        self.sweep()
        token = secrets.token_hex(16)
        while token in self._states:
            token = secrets.token_hex(16)
        self._states[token] = state
        return token

    def get(self, token: str) -> SearchState | None:
        return self._states.get(token)

    def put(self, token: str, state: SearchState) -> None:
        self._states[token] = state

    def lock_for(self, token: str) -> asyncio.Lock:
        lock = self._locks.get(token)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[token] = lock
        return lock

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        expired = [
            token
            for token, state in self._states.items()
            if state.created_at < cutoff and not state.has_pending_work()
        ]
        for token in expired:
            self._states.pop(token, None)
            lock = self._locks.get(token)
            if lock is not None and not lock.locked():
                self._locks.pop(token, None)
        if expired:
            logger.info("evicted expired search sessions count=%s", len(expired))
        return len(expired)

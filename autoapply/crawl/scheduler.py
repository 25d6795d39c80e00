from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from opentelemetry import trace

from autoapply.core.errors import AutomationNotConfiguredError, RateLimitedError, ResourceGoneError
from autoapply.core.urls import page_of, posting_id, query_key, query_text, with_page
from autoapply.crawl.details import JobListing, PostingDetailFetcher
from autoapply.crawl.link_sources import LinkSource
from autoapply.crawl.rate_governor import RateGovernor
from autoapply.crawl.scoring import DEFAULT_MATCH_SCORE, KeywordMatchScorer, MatchScorer
from autoapply.crawl.search_state import QueryStats, QueuedUrl, SearchState, SearchStateStore
from autoapply.crawl.search_urls import (
    DEFAULT_BOARD_SEARCH_URL,
    SearchParams,
    default_search_urls,
    generate_search_urls,
)
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import ApplyRepository, RepositoryError, UserProfileRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SEED_PRIORITY = 1.0
CONTINUATION_PRIORITY_CAP = 0.9
HIGH_MATCH_THRESHOLD = 80.0
HIGH_MATCH_BOOST = 0.2
BASE_EMPTY_PAGE_PATIENCE = 3
EXTENDED_EMPTY_PAGE_PATIENCE = 5
EXTENDED_PATIENCE_EFFECTIVENESS = 0.4
MAX_FAILURE_RETRIES = 3
RETRY_BASE_PRIORITY = 0.5
MIN_RETRY_PRIORITY = 0.05

PageOutcomeKind = Literal["fetched", "rate_limited", "retrying", "abandoned", "gone"]


def retry_priority(attempts: int) -> float:
    return max(MIN_RETRY_PRIORITY, RETRY_BASE_PRIORITY / (2 ** max(0, attempts)))


def continuation_priority(effectiveness: float, average_match: float) -> float:
    priority = effectiveness
    if average_match > HIGH_MATCH_THRESHOLD:
        priority += HIGH_MATCH_BOOST
    return max(0.0, min(CONTINUATION_PRIORITY_CAP, priority))


def empty_page_patience(previous_estimate: float) -> int:
    if previous_estimate > EXTENDED_PATIENCE_EFFECTIVENESS:
        return EXTENDED_EMPTY_PAGE_PATIENCE
    return BASE_EMPTY_PAGE_PATIENCE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PageOutcome:
    url: str
    query: str
    page: int
    outcome: PageOutcomeKind
    total_postings: int = 0
    new_postings: int = 0
    effectiveness: float = 0.0
    stored_links: int = 0
    detail_failures: int = 0
    next_page_url: str | None = None
    error: str | None = None
    listings: list[JobListing] = field(default_factory=list)


@dataclass(slots=True)
class SearchBatchResult:
    token: str
    jobs: list[JobListing]
    has_more: bool
    searches_run: int
    total_jobs_found: int


@dataclass(slots=True)
class SearchProgress:
    kind: Literal["page", "done"]
    page: PageOutcome | None = None
    result: SearchBatchResult | None = None


class CrawlScheduler:
    """Priority-queue crawl over board search URLs with adaptive pagination.

    Seeds sort ahead of every continuation page. A page's next page is queued
    with a priority derived from how many unseen postings it produced, and a
    query stops after too many pages in a row yield nothing new.
    """

    def __init__(
        self,
        *,
        repository: ApplyRepository,
        governor: RateGovernor,
        link_source: LinkSource,
        state_store: SearchStateStore,
        link_queue: LinkQueueStore | None = None,
        detail_fetcher: PostingDetailFetcher | None = None,
        scorer: MatchScorer | None = None,
        base_url: str = DEFAULT_BOARD_SEARCH_URL,
        max_pages_per_query: int = 5,
        seed_pages: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._governor = governor
        self._link_source = link_source
        self.state_store = state_store
        self._link_queue = link_queue
        self._detail_fetcher = detail_fetcher
        self._scorer = scorer or KeywordMatchScorer()
        self.base_url = base_url
        self.max_pages_per_query = max(1, max_pages_per_query)
        self.seed_pages = max(1, seed_pages)
        self._clock = clock

    def new_state(
        self,
        user_id: int,
        profile: UserProfileRecord | None,
        params: SearchParams | None = None,
    ) -> SearchState:
        state = SearchState(user_id=user_id, created_at=self._clock())
        for url in generate_search_urls(profile, self.seed_pages, params=params, base_url=self.base_url):
            state.push(url, SEED_PRIORITY)
        return state

    async def start_session(self, user_id: int, params: SearchParams | None = None) -> str:
        profile = await self._repository.get_user_profile(user_id)
        return self.state_store.save(self.new_state(user_id, profile, params))

    async def run_batch(
        self,
        user_id: int,
        *,
        token: str | None = None,
        reset: bool = False,
        params: SearchParams | None = None,
        max_jobs: int = 50,
        max_searches: int = 5,
    ) -> SearchBatchResult:
        result: SearchBatchResult | None = None
        with tracer.start_as_current_span("crawl.batch") as span:
            span.set_attribute("search.user_id", user_id)
            async for event in self.stream(
                user_id,
                token=token,
                reset=reset,
                params=params,
                max_jobs=max_jobs,
                max_searches=max_searches,
            ):
                if event.kind == "done":
                    result = event.result
        if result is None:
            raise RuntimeError("search stream ended without a result")
        return result

    async def stream(
        self,
        user_id: int,
        *,
        token: str | None = None,
        reset: bool = False,
        params: SearchParams | None = None,
        max_jobs: int = 50,
        max_searches: int = 5,
    ) -> AsyncIterator[SearchProgress]:
        """Run one batch, yielding a progress event per crawled page and a final result.

        The session is copied on entry and written back on exit while the token's
        lock is held, so concurrent batches on the same token run one at a time.
        """
        profile = await self._repository.get_user_profile(user_id)
        existing = self.state_store.get(token) if token and not reset else None
        if existing is not None and existing.user_id != user_id:
            logger.warning("search token belongs to another user; starting a new session user_id=%s", user_id)
            existing = None
        if existing is not None and token:
            session_token = token
        else:
            session_token = self.state_store.save(self.new_state(user_id, profile, params))

        async with self.state_store.lock_for(session_token):
            current = self.state_store.get(session_token)
            working = current.clone() if current is not None else self.new_state(user_id, profile, params)
            jobs: list[JobListing] = []
            searches = 0
            regenerated = False
            try:
                while searches < max_searches and len(jobs) < max_jobs:
                    working.promote_due(self._clock())
                    queued = working.pop_next()
                    if queued is None:
                        if working.deferred or regenerated:
                            break
                        regenerated = True
                        if not self._regenerate(working, profile, params):
                            break
                        continue

                    with tracer.start_as_current_span("crawl.page") as span:
                        span.set_attribute("search.user_id", user_id)
                        span.set_attribute("search.url", queued.url)
                        outcome = await self.crawl_page(working, queued, profile)
                    searches += 1
                    jobs.extend(outcome.listings)
                    yield SearchProgress(kind="page", page=outcome)
            finally:
                self.state_store.put(session_token, working)

            result = SearchBatchResult(
                token=session_token,
                jobs=jobs,
                has_more=working.has_pending_work(),
                searches_run=searches,
                total_jobs_found=working.total_jobs_found,
            )
        logger.info(
            "search batch finished user_id=%s searches=%s jobs=%s has_more=%s",
            user_id,
            searches,
            len(jobs),
            result.has_more,
        )
        yield SearchProgress(kind="done", result=result)

    async def crawl_page(
        self,
        state: SearchState,
        queued: QueuedUrl,
        profile: UserProfileRecord | None,
    ) -> PageOutcome:
        url = queued.url
        query = query_key(url)
        page = page_of(url)
        stats = state.stats_for(query)
        now = self._clock()

        try:
            links = await self._governor.schedule(self._link_source.fetch_links, url)
        except RateLimitedError as exc:
            stats.retry_attempts += 1
            priority = retry_priority(stats.retry_attempts)
            state.defer(url, priority, now + timedelta(seconds=exc.retry_after))
            logger.warning(
                "search page rate limited query=%s page=%s retry_after=%.1fs priority=%.3f",
                query_text(url),
                page,
                exc.retry_after,
                priority,
            )
            return PageOutcome(url=url, query=query, page=page, outcome="rate_limited", error=str(exc))
        except ResourceGoneError as exc:
            state.processed_urls.add(url)
            logger.info("search page gone query=%s page=%s", query_text(url), page)
            return PageOutcome(url=url, query=query, page=page, outcome="gone", error=str(exc))
        except AutomationNotConfiguredError:
            state.push(url, queued.priority)
            raise
        except Exception as exc:
            return self._record_failure(state, url, query, page, exc, now)

        unique_links = list(dict.fromkeys(links))
        new_links: list[str] = []
        new_ids: set[str] = set()
        for link in unique_links:
            external_id = posting_id(link)
            if not external_id or external_id in state.seen_posting_ids or external_id in new_ids:
                continue
            new_ids.add(external_id)
            new_links.append(link)

        # Links are stored before the page counts as processed; on failure the page is retried.
        stored = 0
        if new_links and self._link_queue is not None:
            try:
                stored = await self._link_queue.add_links(state.user_id, new_links, source_query=query_text(url))
            except RepositoryError as exc:
                return self._record_failure(state, url, query, page, exc, now)

        state.processed_urls.add(url)
        state.failure_counts.pop(url, None)
        stats.pages_fetched += 1

        total = len(unique_links)
        effectiveness = len(new_links) / total if total else 0.0
        previous_estimate = stats.effectiveness_estimate
        stats.record_effectiveness(effectiveness)
        state.seen_posting_ids.update(new_ids)
        state.total_jobs_found += len(new_links)

        listings, detail_failures = await self._build_listings(new_links, profile)
        scored = [listing.match_score for listing in listings if listing.detail is not None]
        average_match = sum(scored) / len(scored) if scored else DEFAULT_MATCH_SCORE

        next_page_url = self._schedule_next_page(
            state,
            url,
            page,
            stats,
            total=total,
            new_count=len(new_links),
            effectiveness=effectiveness,
            previous_estimate=previous_estimate,
            average_match=average_match,
        )
        logger.info(
            "search page fetched query=%s page=%s total=%s new=%s effectiveness=%.2f next=%s",
            query_text(url),
            page,
            total,
            len(new_links),
            effectiveness,
            next_page_url is not None,
        )
        return PageOutcome(
            url=url,
            query=query,
            page=page,
            outcome="fetched",
            total_postings=total,
            new_postings=len(new_links),
            effectiveness=effectiveness,
            stored_links=stored,
            detail_failures=detail_failures,
            next_page_url=next_page_url,
            listings=listings,
        )

    def _record_failure(
        self,
        state: SearchState,
        url: str,
        query: str,
        page: int,
        exc: Exception,
        now: datetime,
    ) -> PageOutcome:
        failures = state.failure_counts.get(url, 0) + 1
        state.failure_counts[url] = failures
        if failures <= MAX_FAILURE_RETRIES:
            state.defer(url, retry_priority(failures), now + timedelta(seconds=2**failures))
            logger.warning(
                "search page failed query=%s page=%s attempt=%s error=%s",
                query_text(url),
                page,
                failures,
                exc,
            )
            return PageOutcome(url=url, query=query, page=page, outcome="retrying", error=str(exc))
        state.processed_urls.add(url)
        logger.warning(
            "crawl url abandoned url=%s query=%s page=%s attempts=%s error=%s",
            url,
            query_text(url),
            page,
            failures,
            exc,
        )
        return PageOutcome(url=url, query=query, page=page, outcome="abandoned", error=str(exc))

    async def _build_listings(
        self,
        links: list[str],
        profile: UserProfileRecord | None,
    ) -> tuple[list[JobListing], int]:
        if not links:
            return [], 0
        if self._detail_fetcher is None:
            return [
                JobListing(url=link, external_job_id=posting_id(link), match_score=DEFAULT_MATCH_SCORE)
                for link in links
            ], 0

        details, failures = await self._detail_fetcher.fetch_many(links)
        listings = [
            JobListing(
                url=detail.url,
                external_job_id=detail.external_job_id,
                match_score=await self._scorer.score(detail, profile),
                detail=detail,
            )
            for detail in details
        ]
        return listings, failures

    def _schedule_next_page(
        self,
        state: SearchState,
        url: str,
        page: int,
        stats: QueryStats,
        *,
        total: int,
        new_count: int,
        effectiveness: float,
        previous_estimate: float,
        average_match: float,
    ) -> str | None:
        if total == 0:
            return None

        if new_count == 0:
            stats.empty_page_streak += 1
            if stats.empty_page_streak >= empty_page_patience(previous_estimate):
                logger.info(
                    "query exhausted query=%s empty_streak=%s",
                    query_text(url),
                    stats.empty_page_streak,
                )
                return None
            priority = 0.0
        else:
            stats.empty_page_streak = 0
            priority = continuation_priority(effectiveness, average_match)

        if page >= self.max_pages_per_query:
            return None
        next_url = with_page(url, page + 1)
        return next_url if state.push(next_url, priority) else None

    def _regenerate(
        self,
        state: SearchState,
        profile: UserProfileRecord | None,
        params: SearchParams | None,
    ) -> bool:
        added = 0
        for url in generate_search_urls(profile, self.seed_pages, params=params, base_url=self.base_url):
            added += state.push(url, SEED_PRIORITY)
        if not added:
            for url in default_search_urls(base_url=self.base_url):
                added += state.push(url, SEED_PRIORITY)
        if added:
            logger.info("regenerated search seeds user_id=%s added=%s", state.user_id, added)
        return added > 0

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from autoapply.core.errors import (
    AutomationNotConfiguredError,
    RateLimitedError,
    ResourceGoneError,
    TransientNetworkError,
)
from autoapply.core.urls import page_of, posting_id, query_text
from autoapply.crawl.rate_governor import RateGovernor
from autoapply.crawl.scheduler import CrawlScheduler, continuation_priority, retry_priority
from autoapply.crawl.search_state import QueuedUrl, SearchState, SearchStateStore
from autoapply.crawl.search_urls import SearchParams
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import NewJobLink, RepositoryUnavailableError, UserProfileRecord, UserRecord
from autoapply.services.store import InMemoryStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SEARCH_URL = "https://jobs.example.com/search?query=Data+Engineer&day_range=30"
ONE_ROLE = SearchParams(role="Data Engineer")


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class PagedSource:
    """Serves three fresh postings per page, named after the query and page."""

    def __init__(self, per_page: int = 3) -> None:
        self.per_page = per_page
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def fetch_links(self, url: str) -> list[str]:
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0)
        self.active -= 1
        slug = query_text(url).replace(" ", "-").lower()
        page = page_of(url)
        return [f"https://jobs.example.com/view/{slug}-{page}-{index}" for index in range(self.per_page)]


class StaticSource:
    def __init__(self, result: list[str] | Exception) -> None:
        self.result = result
        self.calls = 0

    async def fetch_links(self, url: str) -> list[str]:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return list(self.result)


def _scheduler(source, *, store: InMemoryStore | None = None, clock: FakeClock | None = None, **kwargs) -> CrawlScheduler:
    repository = store or InMemoryStore()
    return CrawlScheduler(
        repository=repository,
        governor=RateGovernor(min_interval_seconds=0.0),
        link_source=source,
        state_store=SearchStateStore(clock=clock or FakeClock()),
        link_queue=LinkQueueStore(repository),
        base_url="https://jobs.example.com/search",
        clock=clock or FakeClock(),
        **kwargs,
    )


def _store_with_profile() -> InMemoryStore:
    store = InMemoryStore()
    store.add_user(
        UserRecord(id=1, email="ada@example.com", subscription_plan="gold", is_auto_apply_enabled=True),
        UserProfileRecord(user_id=1, job_titles_of_interest=["Data Engineer"]),
    )
    return store


def test_priority_helpers() -> None:
    assert retry_priority(1) == pytest.approx(0.25)
    assert retry_priority(10) == pytest.approx(0.05)
    assert continuation_priority(0.5, 70.0) == pytest.approx(0.5)
    assert continuation_priority(0.5, 85.0) == pytest.approx(0.7)
    assert continuation_priority(0.8, 95.0) == pytest.approx(0.9)


def test_rate_limited_page_is_deferred_until_retry_after() -> None:
    clock = FakeClock()
    scheduler = _scheduler(StaticSource(RateLimitedError("slow down", retry_after=10.0)), clock=clock)
    state = SearchState(user_id=1)

    outcome = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None))

    assert outcome.outcome == "rate_limited"
    assert SEARCH_URL not in state.processed_urls
    assert len(state.deferred) == 1
    assert state.deferred[0].priority == pytest.approx(0.25)
    assert state.deferred[0].not_before == T0 + timedelta(seconds=10)
    assert state.stats_for(outcome.query).retry_attempts == 1

    assert state.promote_due(T0 + timedelta(seconds=9)) == 0
    assert state.promote_due(T0 + timedelta(seconds=10)) == 1
    assert state.pop_next().url == SEARCH_URL


def test_page_of_only_seen_postings_scores_zero_and_grows_streak() -> None:
    links = [f"https://jobs.example.com/view/seen-{index}" for index in range(4)]
    scheduler = _scheduler(StaticSource(links))
    state = SearchState(user_id=1)
    state.seen_posting_ids.update(posting_id(link) for link in links)

    outcome = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None))

    stats = state.stats_for(outcome.query)
    assert outcome.outcome == "fetched"
    assert outcome.total_postings == 4
    assert outcome.new_postings == 0
    assert outcome.effectiveness == 0.0
    assert stats.empty_page_streak == 1
    assert outcome.next_page_url is not None
    assert state.queue[-1].priority == 0.0


def test_empty_streak_stops_query_at_patience() -> None:
    links = ["https://jobs.example.com/view/seen-1"]
    scheduler = _scheduler(StaticSource(links))
    state = SearchState(user_id=1, seen_posting_ids={"seen-1"})
    state.stats_for("https://jobs.example.com/search?query=Data+Engineer&day_range=30").empty_page_streak = 2

    outcome = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=0.0), None))

    assert outcome.next_page_url is None
    assert state.queue == []


def test_zero_postings_stops_pagination() -> None:
    scheduler = _scheduler(StaticSource([]))
    state = SearchState(user_id=1)

    outcome = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None))

    assert outcome.total_postings == 0
    assert outcome.next_page_url is None
    assert SEARCH_URL in state.processed_urls


def test_gone_page_is_marked_processed() -> None:
    scheduler = _scheduler(StaticSource(ResourceGoneError("gone")))
    state = SearchState(user_id=1)

    outcome = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None))

    assert outcome.outcome == "gone"
    assert SEARCH_URL in state.processed_urls
    assert state.deferred == []


def test_failing_page_is_abandoned_after_three_retries() -> None:
    source = StaticSource(TransientNetworkError("connection reset"))
    scheduler = _scheduler(source)
    state = SearchState(user_id=1)

    async def run() -> list[str]:
        outcomes = []
        for _ in range(4):
            outcome = await scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None)
            outcomes.append(outcome.outcome)
        return outcomes

    assert asyncio.run(run()) == ["retrying", "retrying", "retrying", "abandoned"]
    assert SEARCH_URL in state.processed_urls
    assert [item.url for item in state.deferred] == [SEARCH_URL]


def test_run_batch_paginates_and_stores_links() -> None:
    store = _store_with_profile()
    source = PagedSource()
    scheduler = _scheduler(source, store=store, max_pages_per_query=5)

    result = asyncio.run(scheduler.run_batch(1, params=ONE_ROLE, max_searches=2, max_jobs=50))

    assert result.searches_run == 2
    assert len(result.jobs) == 6
    assert result.total_jobs_found == 6
    assert result.has_more
    assert [page_of(url) for url in source.calls] == [1, 2]
    assert len(store.links) == 6
    assert all(link.status == "pending" for link in store.links.values())


def test_continuing_a_token_resumes_and_seen_set_only_grows() -> None:
    store = _store_with_profile()
    source = PagedSource()
    scheduler = _scheduler(source, store=store)

    async def run():
        first = await scheduler.run_batch(1, params=ONE_ROLE, max_searches=1)
        seen_after_first = set(scheduler.state_store.get(first.token).seen_posting_ids)
        second = await scheduler.run_batch(1, token=first.token, max_searches=1)
        return first, seen_after_first, second

    first, seen_after_first, second = asyncio.run(run())

    assert second.token == first.token
    assert [page_of(url) for url in source.calls] == [1, 2]
    seen_now = scheduler.state_store.get(first.token).seen_posting_ids
    assert seen_after_first < seen_now
    assert second.total_jobs_found == 6


def test_token_of_another_user_starts_new_session() -> None:
    store = _store_with_profile()
    store.add_user(UserRecord(id=2, email="bob@example.com"))
    scheduler = _scheduler(PagedSource(), store=store)

    async def run():
        first = await scheduler.run_batch(1, max_searches=1)
        other = await scheduler.run_batch(2, token=first.token, max_searches=1)
        return first, other

    first, other = asyncio.run(run())
    assert other.token != first.token
    assert scheduler.state_store.get(first.token).user_id == 1


def test_concurrent_batches_on_one_token_run_one_at_a_time() -> None:
    store = _store_with_profile()
    source = PagedSource()
    scheduler = _scheduler(source, store=store)

    async def run():
        token = await scheduler.start_session(1, ONE_ROLE)
        return await asyncio.gather(
            scheduler.run_batch(1, token=token, max_searches=1),
            scheduler.run_batch(1, token=token, max_searches=1),
        )

    first, second = asyncio.run(run())

    assert source.peak == 1
    assert sorted(page_of(url) for url in source.calls) == [1, 2]
    assert len(set(source.calls)) == 2
    assert first.token == second.token


def test_exhausted_queue_regenerates_default_seeds() -> None:
    source = StaticSource([])
    scheduler = _scheduler(source)

    result = asyncio.run(scheduler.run_batch(1, max_searches=10))

    # three profile-less seeds, then three remote fallbacks
    assert source.calls == 6
    assert result.searches_run == 6
    assert not result.has_more


def test_stream_yields_page_events_then_done() -> None:
    store = _store_with_profile()
    scheduler = _scheduler(PagedSource(), store=store)

    async def run():
        return [event async for event in scheduler.stream(1, max_searches=2)]

    events = asyncio.run(run())
    assert [event.kind for event in events] == ["page", "page", "done"]
    assert events[-1].result.searches_run == 2


class OutageStore(InMemoryStore):
    """Fails the first ``outages`` link writes, then stores normally."""

    def __init__(self, outages: int = 1) -> None:
        super().__init__()
        self.outages = outages

    async def add_job_links(self, user_id: int, links: list[NewJobLink]) -> int:
        if self.outages > 0:
            self.outages -= 1
            raise RepositoryUnavailableError("database unavailable")
        return await super().add_job_links(user_id, links)


def test_link_storage_failure_keeps_postings_unseen_and_retries_page() -> None:
    clock = FakeClock()
    links = [f"https://jobs.example.com/view/p{index}" for index in range(3)]
    store = OutageStore()
    scheduler = _scheduler(StaticSource(links), store=store, clock=clock)
    state = SearchState(user_id=1)

    first = asyncio.run(scheduler.crawl_page(state, QueuedUrl(url=SEARCH_URL, priority=1.0), None))

    assert first.outcome == "retrying"
    assert state.seen_posting_ids == set()
    assert SEARCH_URL not in state.processed_urls
    assert [item.url for item in state.deferred] == [SEARCH_URL]
    assert store.links == {}

    clock.now = T0 + timedelta(seconds=2)
    state.promote_due(clock())
    retried = asyncio.run(scheduler.crawl_page(state, state.pop_next(), None))

    assert retried.outcome == "fetched"
    assert retried.stored_links == 3
    assert state.seen_posting_ids == {"p0", "p1", "p2"}
    assert sorted(link.external_job_id for link in store.links.values()) == ["p0", "p1", "p2"]


def test_missing_automation_worker_keeps_url_in_session() -> None:
    scheduler = _scheduler(StaticSource(AutomationNotConfiguredError("automation worker url not set")))
    state = SearchState(user_id=1)
    state.push(SEARCH_URL, 1.0)
    queued = state.pop_next()

    with pytest.raises(AutomationNotConfiguredError):
        asyncio.run(scheduler.crawl_page(state, queued, None))

    assert [(item.url, item.priority) for item in state.queue] == [(SEARCH_URL, 1.0)]
    assert SEARCH_URL not in state.processed_urls

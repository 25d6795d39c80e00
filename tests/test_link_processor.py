from __future__ import annotations

import asyncio

from conftest import add_user

from autoapply.core.errors import RateLimitedError, ResourceGoneError, TransientNetworkError
from autoapply.core.urls import posting_id
from autoapply.crawl.details import PostingDetail
from autoapply.jobs.link_processor import LinkProcessor
from autoapply.jobs.quota import QuotaManager
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import RepositoryUnavailableError, UserProfileRecord
from autoapply.services.store import InMemoryStore


class FakeDetailFetcher:
    def __init__(self, errors: dict[str, Exception]) -> None:
        self.errors = errors

    async def fetch(self, url: str) -> PostingDetail:
        external_id = posting_id(url)
        if external_id in self.errors:
            raise self.errors[external_id]
        return PostingDetail(url=url, external_job_id=external_id, title=f"Role {external_id}", company="Acme")


class FixedScorer:
    def __init__(self, scores: dict[str, float]) -> None:
        self.scores = scores

    async def score(self, detail: PostingDetail, profile) -> float:
        return self.scores.get(detail.external_job_id, 90.0)


def _urls(*ids: str) -> list[str]:
    return [f"https://jobs.example.com/view/{external_id}" for external_id in ids]


def _by_external_id(store) -> dict[str, object]:
    return {link.external_job_id: link for link in store.links.values()}


def test_link_outcomes_drive_link_and_queue_state(store, clock) -> None:
    add_user(store, plan="gold", profile=UserProfileRecord(user_id=1, match_score_threshold=70))
    link_queue = LinkQueueStore(store)
    processor = LinkProcessor(
        store,
        link_queue,
        FakeDetailFetcher(
            {
                "THROTTLED": RateLimitedError(retry_after=30.0),
                "GONE": ResourceGoneError("gone"),
                "BROKEN": TransientNetworkError("reset"),
            }
        ),
        QuotaManager(store, clock=clock),
        scorer=FixedScorer({"WEAK": 40.0}),
        batch_size=10,
    )

    async def run() -> int:
        await link_queue.add_links(1, _urls("GOOD", "THROTTLED", "GONE", "BROKEN", "WEAK"))
        return await processor.run_once()

    assert asyncio.run(run()) == 1

    links = _by_external_id(store)
    assert links["GOOD"].status == "completed"
    assert links["WEAK"].status == "completed"
    assert links["THROTTLED"].status == "pending"
    assert links["THROTTLED"].error == "Throttled: retry after 30s"
    assert links["GONE"].status == "failed"
    assert links["GONE"].priority == 0.0
    assert links["BROKEN"].status == "failed"

    assert sorted(job.external_job_id for job in store.jobs.values()) == ["GOOD", "WEAK"]
    queued_jobs = [store.jobs[item.job_id].external_job_id for item in store.queue.values()]
    assert queued_jobs == ["GOOD"]
    assert next(iter(store.queue.values())).priority == 100


def test_disabled_users_links_are_left_alone(store, clock) -> None:
    add_user(store, enabled=False)
    link_queue = LinkQueueStore(store)
    processor = LinkProcessor(store, link_queue, FakeDetailFetcher({}), QuotaManager(store, clock=clock))

    async def run() -> int:
        await link_queue.add_links(1, _urls("GOOD"))
        return await processor.run_once()

    assert asyncio.run(run()) == 0
    assert _by_external_id(store)["GOOD"].status == "pending"


def test_claims_no_more_links_than_remaining_quota(store, clock) -> None:
    add_user(store, plan="free")
    link_queue = LinkQueueStore(store)
    processor = LinkProcessor(
        store,
        link_queue,
        FakeDetailFetcher({}),
        QuotaManager(store, clock=clock),
        batch_size=50,
    )

    async def run() -> int:
        await link_queue.add_links(1, _urls(*(f"JOB{index}" for index in range(8))))
        return await processor.run_once()

    assert asyncio.run(run()) == 5
    statuses = sorted(link.status for link in store.links.values())
    assert statuses == ["pending"] * 3 + ["completed"] * 5


class JobWriteOutageStore(InMemoryStore):
    def __init__(self, clock, outages: int) -> None:
        super().__init__(clock=clock)
        self.outages = outages

    async def create_job(self, **kwargs):
        if self.outages > 0:
            self.outages -= 1
            raise RepositoryUnavailableError("database unavailable")
        return await super().create_job(**kwargs)


def test_storage_error_releases_claimed_links_for_next_run(clock) -> None:
    store = JobWriteOutageStore(clock, outages=1)
    add_user(store, plan="gold")
    link_queue = LinkQueueStore(store)
    processor = LinkProcessor(store, link_queue, FakeDetailFetcher({}), QuotaManager(store, clock=clock), batch_size=10)

    async def first_run() -> int:
        await link_queue.add_links(1, _urls("A", "B", "C"))
        return await processor.run_once()

    assert asyncio.run(first_run()) == 2
    links = _by_external_id(store)
    assert links["A"].status == "pending"
    assert links["A"].error == "Processing error: database unavailable"
    assert [links[key].status for key in ("B", "C")] == ["completed", "completed"]

    assert asyncio.run(processor.run_once()) == 1
    assert all(link.status == "completed" for link in store.links.values())
    assert sorted(store.jobs[item.job_id].external_job_id for item in store.queue.values()) == ["A", "B", "C"]

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from autoapply.core.config import Settings
from autoapply.crawl.details import PostingDetailFetcher
from autoapply.crawl.link_sources import BoardPageLinkSource, LinkSource, ScrollLinkSource
from autoapply.crawl.rate_governor import RateGovernor
from autoapply.crawl.scheduler import CrawlScheduler
from autoapply.crawl.search_state import SearchStateStore
from autoapply.jobs.application_worker import ApplicationQueueWorker
from autoapply.jobs.link_processor import LinkProcessor
from autoapply.jobs.quota import QuotaManager
from autoapply.jobs.submission import ApplicationSubmitter
from autoapply.jobs.supervisor import WorkerSupervisor
from autoapply.services.automation_client import AutomationClient
from autoapply.services.link_queue import LinkQueueStore
from autoapply.services.repository import ApplyRepository, get_repository
from autoapply.services.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    repository: ApplyRepository
    governor: RateGovernor
    automation: AutomationClient
    link_queue: LinkQueueStore
    state_store: SearchStateStore
    detail_fetcher: PostingDetailFetcher
    scheduler: CrawlScheduler
    quota: QuotaManager
    submitter: ApplicationSubmitter
    link_processor: LinkProcessor
    worker: ApplicationQueueWorker
    supervisor: WorkerSupervisor

    async def close(self) -> None:
        await self.supervisor.stop()
        await self.repository.close()


def build_link_source(settings: Settings, automation: AutomationClient) -> LinkSource:
    if settings.discovery_mode == "scroll":
        return ScrollLinkSource(automation, max_scrolls=settings.scrape_max_scrolls)
    return BoardPageLinkSource(timeout_seconds=settings.fetch_timeout_seconds)


def build_runtime(
    settings: Settings,
    *,
    repository: ApplyRepository | None = None,
    automation: AutomationClient | None = None,
    governor: RateGovernor | None = None,
    link_source: LinkSource | None = None,
) -> Runtime:
    """Wire every service once; callers share the result instead of module globals."""
    if repository is None:
        if settings.database_url:
            repository = get_repository()
        else:
            logger.warning("database_url not set; using in-memory store")
            repository = InMemoryStore()

    governor = governor or RateGovernor(
        max_concurrent=settings.crawl_max_concurrent,
        min_interval_seconds=settings.crawl_min_interval_seconds,
        reservoir=settings.crawl_reservoir,
        refresh_interval_seconds=settings.crawl_reservoir_refresh_seconds,
    )
    automation = automation or AutomationClient(
        settings.automation_worker_url,
        timeout_seconds=settings.automation_timeout_seconds,
        submit_timeouts_seconds=settings.submit_timeouts_seconds,
        retry_delay_seconds=settings.submit_retry_delay_seconds,
    )
    link_queue = LinkQueueStore(repository)
    state_store = SearchStateStore(ttl=timedelta(hours=settings.search_state_ttl_hours))
    detail_fetcher = PostingDetailFetcher(governor, timeout_seconds=settings.detail_timeout_seconds)
    scheduler = CrawlScheduler(
        repository=repository,
        governor=governor,
        link_source=link_source or build_link_source(settings, automation),
        state_store=state_store,
        link_queue=link_queue,
        detail_fetcher=detail_fetcher if settings.search_fetch_details else None,
        base_url=settings.board_search_url,
        max_pages_per_query=settings.search_max_pages_per_query,
        seed_pages=settings.search_seed_pages,
    )
    quota = QuotaManager(repository, timezone_name=settings.quota_timezone)
    submitter = ApplicationSubmitter(automation, repository, governor)
    link_processor = LinkProcessor(
        repository,
        link_queue,
        detail_fetcher,
        quota,
        batch_size=settings.link_batch_size,
    )
    worker = ApplicationQueueWorker(
        repository,
        quota,
        submitter,
        link_processor=link_processor,
        link_queue=link_queue,
        batch_size=settings.worker_batch_size,
        pacing_mode=settings.pacing_mode,
        processing_lease_seconds=settings.processing_lease_seconds,
    )
    supervisor = WorkerSupervisor(
        worker,
        interval_seconds=settings.worker_tick_seconds,
        max_backoff_seconds=settings.worker_max_backoff_seconds,
    )
    return Runtime(
        settings=settings,
        repository=repository,
        governor=governor,
        automation=automation,
        link_queue=link_queue,
        state_store=state_store,
        detail_fetcher=detail_fetcher,
        scheduler=scheduler,
        quota=quota,
        submitter=submitter,
        link_processor=link_processor,
        worker=worker,
        supervisor=supervisor,
    )

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "autoapply-engine"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    automation_worker_url: str | None = None
    automation_timeout_seconds: float = 60.0
    submit_timeouts_seconds: list[float] = [90.0, 180.0, 300.0, 480.0]
    submit_retry_delay_seconds: float = 5.0
    board_search_url: str = "https://jobs.workable.com/search"
    discovery_mode: Literal["scroll", "pagination"] = "scroll"
    crawl_max_concurrent: int = 5
    crawl_min_interval_seconds: float = 0.6
    crawl_reservoir: int = 100
    crawl_reservoir_refresh_seconds: float = 60.0
    fetch_timeout_seconds: float = 30.0
    detail_timeout_seconds: float = 10.0
    scrape_max_scrolls: int = 50
    search_max_pages_per_query: int = 5
    search_seed_pages: int = 1
    search_state_ttl_hours: float = 24.0
    search_max_jobs: int = 50
    search_max_searches: int = 5
    search_fetch_details: bool = False
    worker_autostart: bool = True
    worker_tick_seconds: float = 10.0
    worker_batch_size: int = 5
    worker_max_backoff_seconds: float = 60.0
    pacing_mode: Literal["item", "batch"] = "item"
    quota_timezone: str = "UTC"
    processing_lease_seconds: int = 1800
    link_batch_size: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "autoapply-engine"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()

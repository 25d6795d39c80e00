from typing import Literal

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    token: str | None = None
    reset: bool = False
    role: str | None = Field(default=None, max_length=200)
    location: str | None = Field(default=None, max_length=200)
    work_mode: Literal["remote", "hybrid", "any"] | None = None
    day_range: int | None = Field(default=None, ge=1, le=365)
    max_jobs: int | None = Field(default=None, ge=1, le=500)
    max_searches: int | None = Field(default=None, ge=1, le=50)


class JobListingOut(BaseModel):
    url: str
    external_job_id: str
    match_score: float
    title: str | None = None
    company: str | None = None
    location: str | None = None
    remote: bool = False


class PageOutcomeOut(BaseModel):
    url: str
    page: int
    outcome: str
    total_postings: int
    new_postings: int
    effectiveness: float
    stored_links: int
    detail_failures: int
    next_page_url: str | None = None
    error: str | None = None


class SearchBatchOut(BaseModel):
    token: str
    jobs: list[JobListingOut]
    has_more: bool
    searches_run: int
    total_jobs_found: int

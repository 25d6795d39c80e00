import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from autoapply.api.deps import get_runtime
from autoapply.core.errors import AutoApplyError, AutomationNotConfiguredError
from autoapply.crawl.details import JobListing
from autoapply.crawl.scheduler import PageOutcome, SearchBatchResult
from autoapply.crawl.search_urls import DEFAULT_DAY_RANGE, SearchParams
from autoapply.schemas.search import JobListingOut, PageOutcomeOut, SearchBatchOut, SearchRequest
from autoapply.services.repository import RepositoryUnavailableError
from autoapply.services.runtime import Runtime

router = APIRouter()
logger = logging.getLogger(__name__)


def _params(payload: SearchRequest) -> SearchParams:
    return SearchParams(
        role=payload.role,
        location=payload.location,
        work_mode=payload.work_mode,
        day_range=payload.day_range or DEFAULT_DAY_RANGE,
    )


def _listing_out(listing: JobListing) -> JobListingOut:
    detail = listing.detail
    return JobListingOut(
        url=listing.url,
        external_job_id=listing.external_job_id,
        match_score=listing.match_score,
        title=detail.title if detail else None,
        company=detail.company if detail else None,
        location=detail.location if detail else None,
        remote=detail.remote if detail else False,
    )


def _page_out(page: PageOutcome) -> PageOutcomeOut:
    return PageOutcomeOut(
        url=page.url,
        page=page.page,
        outcome=page.outcome,
        total_postings=page.total_postings,
        new_postings=page.new_postings,
        effectiveness=page.effectiveness,
        stored_links=page.stored_links,
        detail_failures=page.detail_failures,
        next_page_url=page.next_page_url,
        error=page.error,
    )


def _batch_out(result: SearchBatchResult) -> SearchBatchOut:
    return SearchBatchOut(
        token=result.token,
        jobs=[_listing_out(listing) for listing in result.jobs],
        has_more=result.has_more,
        searches_run=result.searches_run,
        total_jobs_found=result.total_jobs_found,
    )


def _limits(payload: SearchRequest, runtime: Runtime) -> dict[str, int]:
    return {
        "max_jobs": payload.max_jobs or runtime.settings.search_max_jobs,
        "max_searches": payload.max_searches or runtime.settings.search_max_searches,
    }


@router.post("/{user_id}", response_model=SearchBatchOut)
async def run_search(
    user_id: int,
    payload: SearchRequest,
    runtime: Runtime = Depends(get_runtime),
) -> SearchBatchOut:
    try:
        result = await runtime.scheduler.run_batch(
            user_id,
            token=payload.token,
            reset=payload.reset,
            params=_params(payload),
            **_limits(payload, runtime),
        )
    except AutomationNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _batch_out(result)


@router.post("/{user_id}/stream")
async def stream_search(
    user_id: int,
    payload: SearchRequest,
    runtime: Runtime = Depends(get_runtime),
) -> StreamingResponse:
    async def _lines() -> AsyncIterator[str]:
        try:
            async for event in runtime.scheduler.stream(
                user_id,
                token=payload.token,
                reset=payload.reset,
                params=_params(payload),
                **_limits(payload, runtime),
            ):
                if event.kind == "page" and event.page is not None:
                    body = {"event": "page", "page": _page_out(event.page).model_dump(mode="json")}
                elif event.result is not None:
                    body = {"event": "done", "result": _batch_out(event.result).model_dump(mode="json")}
                else:
                    continue
                yield json.dumps(body) + "\n"
        except (AutoApplyError, RepositoryUnavailableError) as exc:
            logger.warning("search stream aborted user_id=%s error=%s", user_id, exc)
            yield json.dumps({"event": "error", "detail": str(exc)}) + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")

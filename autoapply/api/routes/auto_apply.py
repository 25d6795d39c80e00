from fastapi import APIRouter, Depends, HTTPException, Query, status

from autoapply.api.deps import get_runtime
from autoapply.jobs.enqueue import enqueue_jobs_for_user
from autoapply.jobs.status import build_status
from autoapply.schemas.queue import EnqueueRequest, OutcomeRequest, QueueItemOut
from autoapply.schemas.status import AutoApplyStatusOut, WorkerStateOut
from autoapply.services.repository import (
    QueueItemRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from autoapply.services.runtime import Runtime

router = APIRouter()


def _worker_state(runtime: Runtime, *, changed: bool = False) -> WorkerStateOut:
    supervisor = runtime.supervisor
    return WorkerStateOut(
        state=supervisor.state,
        changed=changed,
        ticks=supervisor.ticks,
        last_tick_at=supervisor.last_tick_at,
        last_error=supervisor.last_error,
    )


def _queue_item_out(item: QueueItemRecord) -> QueueItemOut:
    return QueueItemOut(
        id=item.id,
        user_id=item.user_id,
        job_id=item.job_id,
        priority=item.priority,
        status=item.status,
        attempt_count=item.attempt_count,
        error=item.error,
        created_at=item.created_at,
        updated_at=item.updated_at,
        submitted_at=item.submitted_at,
        processed_at=item.processed_at,
    )


@router.get("/worker", response_model=WorkerStateOut)
async def get_worker_state(runtime: Runtime = Depends(get_runtime)) -> WorkerStateOut:
    return _worker_state(runtime)


@router.post("/worker/start", response_model=WorkerStateOut)
async def start_worker(runtime: Runtime = Depends(get_runtime)) -> WorkerStateOut:
    changed = runtime.supervisor.start()
    return _worker_state(runtime, changed=changed)


@router.post("/worker/stop", response_model=WorkerStateOut)
async def stop_worker(runtime: Runtime = Depends(get_runtime)) -> WorkerStateOut:
    changed = await runtime.supervisor.stop()
    return _worker_state(runtime, changed=changed)


@router.get("/{user_id}/status", response_model=AutoApplyStatusOut)
async def get_status(
    user_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    runtime: Runtime = Depends(get_runtime),
) -> AutoApplyStatusOut:
    try:
        return await build_status(
            runtime.repository,
            runtime.quota,
            user_id,
            worker_running=runtime.supervisor.is_running,
            log_limit=limit,
            log_offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{user_id}/enqueue", response_model=list[QueueItemOut], status_code=status.HTTP_202_ACCEPTED)
async def enqueue(
    user_id: int,
    payload: EnqueueRequest,
    runtime: Runtime = Depends(get_runtime),
) -> list[QueueItemOut]:
    try:
        user = await runtime.repository.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        for job_id in payload.job_ids:
            job = await runtime.repository.get_job(job_id)
            if job is None or job.user_id != user_id:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"job {job_id} not found")
        items = await enqueue_jobs_for_user(runtime.repository, user, payload.job_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [_queue_item_out(item) for item in items]


@router.post("/queue/{queue_id}/outcome", response_model=QueueItemOut)
async def record_outcome(
    queue_id: int,
    payload: OutcomeRequest,
    runtime: Runtime = Depends(get_runtime),
) -> QueueItemOut:
    try:
        item = await runtime.worker.record_async_outcome(queue_id, payload.outcome, payload.message)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _queue_item_out(item)

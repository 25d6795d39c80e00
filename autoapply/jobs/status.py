from __future__ import annotations

from autoapply.jobs.quota import QuotaManager
from autoapply.schemas.status import AuditLogOut, AutoApplyStatusOut, StatusLabel
from autoapply.services.repository import ApplyRepository, RepositoryNotFoundError


def status_label(*, in_flight: int, standby: int, remaining: int) -> StatusLabel:
    if in_flight > 0:
        return "In Progress"
    if standby > 0 and remaining <= 0:
        return "Standby"
    return "Completed"


async def build_status(
    repository: ApplyRepository,
    quota: QuotaManager,
    user_id: int,
    *,
    worker_running: bool,
    log_limit: int = 20,
    log_offset: int = 0,
) -> AutoApplyStatusOut:
    user = await repository.get_user(user_id)
    if user is None:
        raise RepositoryNotFoundError(f"user {user_id} not found")

    counts = await repository.count_queue_by_status(user_id)
    snapshot = await quota.snapshot(user)
    logs = await repository.list_audit_logs(user_id, limit=log_limit, offset=log_offset)

    in_flight = counts.get("queued", 0) + counts.get("pending", 0) + counts.get("processing", 0)
    standby = counts.get("standby", 0)
    in_standby_mode = snapshot.remaining <= 0 and standby > 0
    latest_message = ""
    if in_standby_mode:
        plural = "" if standby == 1 else "s"
        latest_message = (
            f"{standby} job{plural} in standby mode. Daily limit reached. "
            f"Applications will resume at {snapshot.next_reset.isoformat()}."
        )
    elif logs:
        latest_message = logs[0].message

    return AutoApplyStatusOut(
        current_status=status_label(in_flight=in_flight, standby=standby, remaining=snapshot.remaining),
        is_worker_running=worker_running,
        is_auto_apply_enabled=user.is_auto_apply_enabled,
        is_in_standby_mode=in_standby_mode,
        queued_jobs=in_flight,
        standby_jobs=standby,
        completed_jobs=counts.get("completed", 0),
        failed_jobs=counts.get("failed", 0),
        latest_message=latest_message,
        applied_today=snapshot.applied_today,
        daily_limit=snapshot.daily_limit,
        remaining_today=snapshot.remaining,
        next_reset=snapshot.next_reset,
        recent_logs=[
            AuditLogOut(
                id=entry.id,
                job_id=entry.job_id,
                status=entry.status,
                message=entry.message,
                created_at=entry.created_at,
            )
            for entry in logs
        ],
    )

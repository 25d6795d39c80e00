from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

StatusLabel = Literal["In Progress", "Standby", "Completed"]
WorkerStateName = Literal["stopped", "running"]


class AuditLogOut(BaseModel):
    id: int
    job_id: int | None = None
    status: str
    message: str
    created_at: datetime


class AutoApplyStatusOut(BaseModel):
    current_status: StatusLabel
    is_worker_running: bool
    is_auto_apply_enabled: bool
    is_in_standby_mode: bool
    queued_jobs: int
    standby_jobs: int
    completed_jobs: int
    failed_jobs: int
    latest_message: str = ""
    applied_today: int
    daily_limit: int
    remaining_today: int
    next_reset: datetime
    recent_logs: list[AuditLogOut] = Field(default_factory=list)


class WorkerStateOut(BaseModel):
    state: WorkerStateName
    changed: bool = False
    ticks: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None

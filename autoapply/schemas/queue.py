from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

QueueStatus = Literal["queued", "pending", "processing", "completed", "failed", "skipped", "standby"]
AsyncOutcome = Literal["success", "skipped", "error"]


class EnqueueRequest(BaseModel):
    job_ids: list[int] = Field(min_length=1, max_length=500)


class QueueItemOut(BaseModel):
    id: int
    user_id: int
    job_id: int
    priority: int
    status: QueueStatus
    attempt_count: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None = None
    processed_at: datetime | None = None


class OutcomeRequest(BaseModel):
    outcome: AsyncOutcome
    message: str | None = Field(default=None, max_length=2000)

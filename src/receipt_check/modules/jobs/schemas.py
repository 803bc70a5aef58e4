from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from receipt_check.modules.jobs.models import JobStatus

PERIOD_PATTERN = r"^\d{4}-\d{2}$"


class JobCreate(BaseModel):
    period: str
    overwrite: bool = False


class JobErrorOut(BaseModel):
    item_id: str | None = None
    display_name: str | None = None
    message: str


class JobOut(BaseModel):
    id: uuid.UUID
    period: str
    status: JobStatus
    total: int
    offset: int
    processed: int
    failed_count: int
    errors: list[JobErrorOut] = Field(default_factory=list)
    overwrite: bool
    chunk_failures: int = 0
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class AdvanceOut(BaseModel):
    job_id: uuid.UUID
    done: bool
    claimed: bool
    status: JobStatus | None = None
    offset: int = 0
    total: int = 0


class DispatchOut(BaseModel):
    dispatched: bool
    job_id: uuid.UUID | None = None
    done: bool | None = None
    error: str | None = None


class EnqueueOut(BaseModel):
    job_id: uuid.UUID
    celery_task_id: str | None = None

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from receipt_check.core.models import Base, Timestamped, UUIDPrimaryKey


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})


class VerificationJob(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "jobs_verification_job"

    period: Mapped[str] = mapped_column(String(7), index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        index=True,
    )
    overwrite: Mapped[bool] = mapped_column(Boolean, default=False)

    total: Mapped[int] = mapped_column(Integer, default=0)
    offset: Mapped[int] = mapped_column("offset", Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)

    # Identity order of the period's items, fixed on the first chunk.
    item_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    chunk_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from receipt_check.core.logging import get_logger, log_event
from receipt_check.core.models import as_utc, utcnow
from receipt_check.modules.jobs.errors import JobNotFound, JobStorageError
from receipt_check.modules.jobs.models import ACTIVE_STATUSES, JobStatus, VerificationJob

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobState:
    """Detached copy of a job row, read once at the start of an advance."""

    id: uuid.UUID
    period: str
    status: JobStatus
    overwrite: bool
    total: int
    offset: int
    processed: int
    failed_count: int
    errors: tuple[dict[str, Any], ...]
    item_ids: tuple[str, ...] | None
    version: int
    claimed_until: datetime | None
    chunk_failures: int

    @classmethod
    def from_row(cls, job: VerificationJob) -> JobState:
        return cls(
            id=job.id,
            period=job.period,
            status=job.status,
            overwrite=bool(job.overwrite),
            total=job.total or 0,
            offset=job.offset or 0,
            processed=job.processed or 0,
            failed_count=job.failed_count or 0,
            errors=tuple(job.errors or ()),
            item_ids=tuple(job.item_ids) if job.item_ids is not None else None,
            version=job.version or 0,
            claimed_until=as_utc(job.claimed_until),
            chunk_failures=job.chunk_failures or 0,
        )


def parse_job_id(job_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except ValueError as e:
        raise JobNotFound(f"Job not found: {job_id}") from e


def create_job(
    session: Session, *, period: str, overwrite: bool, total: int = 0
) -> VerificationJob:
    job = VerificationJob(
        period=period,
        status=JobStatus.QUEUED,
        overwrite=overwrite,
        total=total,
        offset=0,
        processed=0,
        failed_count=0,
        errors=[],
        item_ids=None,
        version=0,
        claimed_until=None,
        chunk_failures=0,
        last_error=None,
        completed_at=None,
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    log_event(
        logger,
        "job.created",
        job_id=str(job.id),
        period=job.period,
        overwrite=job.overwrite,
        total=job.total,
    )
    return job


def get_job(session: Session, *, job_id: uuid.UUID | str) -> VerificationJob | None:
    try:
        return session.scalar(
            select(VerificationJob).where(VerificationJob.id == parse_job_id(job_id))
        )
    except JobNotFound:
        return None


def load_job_state(session: Session, *, job_id: uuid.UUID | str) -> JobState:
    try:
        job = get_job(session, job_id=job_id)
    except SQLAlchemyError as e:
        raise JobStorageError(f"Could not load job {job_id}: {e}") from e
    if not job:
        raise JobNotFound(f"Job not found: {job_id}")
    return JobState.from_row(job)


def update_job(
    session: Session, *, job_id: uuid.UUID, expected_version: int, **fields: Any
) -> bool:
    """
    Write ``fields`` only if the stored version still equals ``expected_version``.

    Every successful write bumps the version, so a caller holding a stale read
    can never overwrite someone else's progress. Returns False when the
    condition did not match.
    """
    values = dict(fields)
    values.setdefault("updated_at", utcnow())
    values["version"] = expected_version + 1
    stmt = (
        update(VerificationJob)
        .where(VerificationJob.id == job_id, VerificationJob.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise JobStorageError(f"Could not update job {job_id}: {e}") from e
    return result.rowcount == 1


def delete_job(session: Session, *, job_id: uuid.UUID | str) -> bool:
    try:
        parsed = parse_job_id(job_id)
    except JobNotFound:
        return False
    result = session.execute(delete(VerificationJob).where(VerificationJob.id == parsed))
    session.commit()
    deleted = result.rowcount == 1
    if deleted:
        log_event(logger, "job.deleted", job_id=str(parsed))
    return deleted


def list_jobs(session: Session, *, limit: int = 20) -> list[VerificationJob]:
    return list(
        session.scalars(
            select(VerificationJob)
            .order_by(VerificationJob.created_at.desc())
            .limit(limit)
        )
    )


def oldest_active_job(session: Session) -> VerificationJob | None:
    return session.scalar(
        select(VerificationJob)
        .where(VerificationJob.status.in_(ACTIVE_STATUSES))
        .order_by(VerificationJob.created_at.asc())
        .limit(1)
    )

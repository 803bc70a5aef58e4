from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from receipt_check.core.db import SessionLocal
from receipt_check.core.logging import get_logger, log_event
from receipt_check.modules.jobs.errors import AdvanceError, JobStorageError
from receipt_check.modules.jobs.processor import AdvanceResult, ChunkProcessor
from receipt_check.modules.jobs.store import oldest_active_job

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    dispatched: bool
    job_id: uuid.UUID | None = None
    done: bool | None = None
    error: str | None = None


def dispatch_next(
    *,
    processor: ChunkProcessor | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> DispatchResult:
    """Advance the oldest queued or running job by one chunk, if there is one."""
    try:
        with session_factory() as session:
            job = oldest_active_job(session)
            job_id = job.id if job else None
    except SQLAlchemyError as e:
        error = JobStorageError(f"Could not select the next job: {e}")
        log_event(logger, "job.dispatch.error", error_kind=error.kind, error=str(error))
        return DispatchResult(dispatched=False, error=error.kind)
    if job_id is None:
        return DispatchResult(dispatched=False)

    processor = processor or ChunkProcessor(session_factory=session_factory)
    log_event(logger, "job.dispatch.start", job_id=str(job_id))
    try:
        result: AdvanceResult = processor.advance(job_id)
    except AdvanceError as e:
        log_event(
            logger,
            "job.dispatch.error",
            job_id=str(job_id),
            error_kind=e.kind,
            error=str(e),
        )
        return DispatchResult(dispatched=True, job_id=job_id, error=e.kind)

    log_event(
        logger,
        "job.dispatch.finish",
        job_id=str(job_id),
        done=result.done,
        claimed=result.claimed,
    )
    return DispatchResult(dispatched=True, job_id=job_id, done=result.done)

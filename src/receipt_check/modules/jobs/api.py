from __future__ import annotations

import re

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from receipt_check.core.db import db_session
from receipt_check.core.logging import get_logger, log_event
from receipt_check.modules.jobs import processor as processor_module
from receipt_check.modules.jobs.dispatcher import dispatch_next
from receipt_check.modules.jobs.errors import JobNotFound, JobStorageError, SourceUnavailable
from receipt_check.modules.jobs.schemas import (
    PERIOD_PATTERN,
    AdvanceOut,
    DispatchOut,
    EnqueueOut,
    JobCreate,
    JobOut,
)
from receipt_check.modules.jobs.store import create_job, delete_job, get_job, list_jobs
from receipt_check.modules.sources import service as sources_service
from receipt_check.worker.tasks import advance_job_task

router = APIRouter(tags=["jobs"])
logger = get_logger(__name__)


@router.get("/jobs", response_model=list[JobOut])
def list_jobs_endpoint(
    limit: int = Query(default=20),
    session: Session = Depends(db_session),
) -> list[JobOut]:
    limit = min(50, max(1, limit))
    return [JobOut.model_validate(j, from_attributes=True) for j in list_jobs(session, limit=limit)]


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_201_CREATED)
def create_job_endpoint(
    payload: JobCreate,
    session: Session = Depends(db_session),
) -> JobOut:
    period = payload.period.strip()
    if not re.match(PERIOD_PATTERN, period):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="period must be a month in YYYY-MM form",
        )
    # Display-only count; the first chunk re-resolves and is authoritative.
    try:
        total = len(sources_service.resolve_work_items(period))
    except SourceUnavailable as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    job = create_job(session, period=period, overwrite=payload.overwrite, total=total)
    return JobOut.model_validate(job, from_attributes=True)


@router.post("/jobs/dispatch-next", response_model=DispatchOut)
def dispatch_next_endpoint() -> DispatchOut:
    result = dispatch_next()
    return DispatchOut(
        dispatched=result.dispatched,
        job_id=result.job_id,
        done=result.done,
        error=result.error,
    )


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job_endpoint(
    job_id: str,
    session: Session = Depends(db_session),
) -> JobOut:
    job = get_job(session, job_id=job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobOut.model_validate(job, from_attributes=True)


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job_endpoint(
    job_id: str,
    session: Session = Depends(db_session),
) -> Response:
    if not delete_job(session, job_id=job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/jobs/{job_id}/advance", response_model=AdvanceOut)
def advance_job_endpoint(job_id: str) -> AdvanceOut:
    try:
        result = processor_module.advance_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SourceUnavailable as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except JobStorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    return AdvanceOut(
        job_id=result.job_id,
        done=result.done,
        claimed=result.claimed,
        status=result.status,
        offset=result.offset,
        total=result.total,
    )


@router.post("/jobs/{job_id}/enqueue", response_model=EnqueueOut)
def enqueue_job_endpoint(
    job_id: str,
    session: Session = Depends(db_session),
) -> EnqueueOut:
    job = get_job(session, job_id=job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    async_result = advance_job_task.delay(str(job.id))
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="advance_job",
        celery_task_id=async_result.id,
        job_id=str(job.id),
    )
    return EnqueueOut(job_id=job.id, celery_task_id=async_result.id)

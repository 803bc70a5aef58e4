from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import receipt_check.models  # noqa: F401
# isort: on

import time
from typing import Any

from receipt_check.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from receipt_check.modules.jobs.errors import AdvanceError
from receipt_check.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="advance_job", bind=True)
def advance_job_task(self, job_id: str) -> dict[str, Any]:
    from receipt_check.modules.jobs.processor import advance_job

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(logger, "celery.task.start", task_name="advance_job", job_id=job_id)
    try:
        result = advance_job(job_id)
    except AdvanceError as e:
        # The job is resumable; report once and let the next trigger retry.
        log_event(
            logger,
            "celery.task.error",
            task_name="advance_job",
            job_id=job_id,
            error_kind=e.kind,
            error=str(e),
            duration_ms=monotonic_ms(start),
        )
        return {"job_id": job_id, "done": False, "error": e.kind}
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="advance_job",
            job_id=job_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)

    log_event(
        logger,
        "celery.task.finish",
        task_name="advance_job",
        job_id=job_id,
        done=result.done,
        duration_ms=monotonic_ms(start),
    )
    return {"job_id": job_id, "done": result.done, "error": None}


@celery_app.task(name="dispatch_next", bind=True)
def dispatch_next_task(self) -> dict[str, Any]:
    from receipt_check.modules.jobs.dispatcher import dispatch_next

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    try:
        result = dispatch_next()
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="dispatch_next",
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)

    if result.dispatched:
        log_event(
            logger,
            "celery.task.finish",
            task_name="dispatch_next",
            job_id=str(result.job_id),
            done=result.done,
            error_kind=result.error,
            duration_ms=monotonic_ms(start),
        )
    return {
        "dispatched": result.dispatched,
        "job_id": str(result.job_id) if result.job_id else None,
        "done": result.done,
        "error": result.error,
    }

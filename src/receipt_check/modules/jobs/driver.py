from __future__ import annotations

import enum
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from receipt_check.core.config import settings
from receipt_check.core.logging import get_logger, log_event
from receipt_check.modules.jobs.clients import JobClient
from receipt_check.modules.jobs.errors import AdvanceError
from receipt_check.modules.jobs.schemas import JobOut

logger = get_logger(__name__)


class DriveStatus(str, enum.Enum):
    DONE = "done"
    CANCELLED = "cancelled"
    HALTED = "halted"


@dataclass(frozen=True)
class DriveOutcome:
    status: DriveStatus
    job: JobOut | None
    calls: int
    error: str | None = None


class JobDriver:
    """
    Caller-side loop that keeps advancing one job until it reports done.

    Nothing is held open between calls, so dropping the loop (cancel event,
    process exit, closed tab) leaves the job exactly where the last
    successful advance put it; the dispatcher or a later run picks it up.
    """

    def __init__(
        self,
        client: JobClient,
        *,
        interval: float | None = None,
        on_update: Callable[[JobOut], None] | None = None,
    ) -> None:
        self._client = client
        self._interval = (
            settings.driver_interval_ms / 1000.0 if interval is None else max(0.0, interval)
        )
        self._on_update = on_update

    def run(self, job_id: uuid.UUID | str, cancel: threading.Event | None = None) -> DriveOutcome:
        cancel = cancel or threading.Event()
        calls = 0
        job: JobOut | None = None
        log_event(logger, "job.driver.start", job_id=str(job_id))

        while not cancel.is_set():
            try:
                result = self._client.advance(job_id)
                calls += 1
                job = self._client.get(job_id)
            except AdvanceError as e:
                log_event(
                    logger,
                    "job.driver.halted",
                    job_id=str(job_id),
                    calls=calls,
                    error_kind=e.kind,
                    error=str(e),
                )
                return DriveOutcome(DriveStatus.HALTED, job, calls, error=f"{e.kind}: {e}")

            if self._on_update is not None:
                self._on_update(job)
            if result.done:
                log_event(
                    logger,
                    "job.driver.done",
                    job_id=str(job_id),
                    calls=calls,
                    status=job.status.value,
                )
                return DriveOutcome(DriveStatus.DONE, job, calls)
            if cancel.wait(self._interval):
                break

        log_event(logger, "job.driver.cancelled", job_id=str(job_id), calls=calls)
        return DriveOutcome(DriveStatus.CANCELLED, job, calls)

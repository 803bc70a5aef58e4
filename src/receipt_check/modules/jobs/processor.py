from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from receipt_check.core.config import settings
from receipt_check.core.db import SessionLocal
from receipt_check.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_job_context,
    set_job_context,
)
from receipt_check.core.models import utcnow
from receipt_check.modules.jobs.errors import AdvanceError, JobStorageError
from receipt_check.modules.jobs.models import JobStatus
from receipt_check.modules.jobs.pacing import Pacer, pacer_from_settings
from receipt_check.modules.jobs.store import JobState, load_job_state, update_job
from receipt_check.modules.results.service import lookup_existing_verdicts, upsert_verdict
from receipt_check.modules.sources.schemas import WorkItem
from receipt_check.modules.sources.service import resolve_work_items
from receipt_check.modules.verification.ai import verify_receipt
from receipt_check.modules.verification.receipts import fetch_receipt_bytes
from receipt_check.modules.verification.schemas import Verdict, VerificationRequest

logger = get_logger(__name__)

MISSING_RECEIPT_MESSAGE = "receipt reference is missing"
MISSING_METADATA_MESSAGE = "tool or period is missing"
NO_LONGER_LISTED_MESSAGE = "work item is no longer listed for this period"


@dataclass(frozen=True)
class AdvanceResult:
    job_id: uuid.UUID
    done: bool
    claimed: bool = True
    status: JobStatus | None = None
    offset: int = 0
    total: int = 0


@dataclass
class _Claim:
    # Version written by our latest claim or lease renewal.
    version: int


@dataclass
class ItemTally:
    processed: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def fail(self, *, item_id: str, display_name: str | None, message: str) -> None:
        self.failed += 1
        self.errors.append({"item_id": item_id, "display_name": display_name, "message": message})


class ChunkProcessor:
    """
    Advances one verification job by at most one chunk per call.

    Every call rebuilds the job from the database, claims it with a
    version-conditioned update, works through the next slice of the period's
    items and persists the new cursor and counts in a single conditioned
    write. The lease is renewed before every item, so only a caller that
    stops making progress loses it. A call that dies before the final write
    leaves counts and cursor as they were; its lease simply runs out.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        resolve_items: Callable[[str], list[WorkItem]] | None = None,
        fetch_receipt: Callable[[str], tuple[bytes, str]] | None = None,
        verify: Callable[[bytes, str, VerificationRequest], Verdict] | None = None,
        pacer: Pacer | None = None,
        chunk_size: int | None = None,
        claim_lease_seconds: int | None = None,
        max_chunk_failures: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._resolve_items = resolve_items or resolve_work_items
        self._fetch_receipt = fetch_receipt or fetch_receipt_bytes
        self._verify = verify or verify_receipt
        self._pacer = pacer or pacer_from_settings()
        self._chunk_size = max(1, chunk_size or settings.chunk_size)
        self._lease = timedelta(seconds=claim_lease_seconds or settings.claim_lease_seconds)
        self._max_chunk_failures = max(1, max_chunk_failures or settings.max_chunk_failures)
        self._clock = clock

    def advance(self, job_id: uuid.UUID | str) -> AdvanceResult:
        with self._session_factory() as session:
            state = load_job_state(session, job_id=job_id)
        token = set_job_context(str(state.id))
        try:
            return self._advance(state)
        finally:
            reset_job_context(token)

    def _advance(self, state: JobState) -> AdvanceResult:
        if state.status.is_terminal:
            return _result(state, done=True, claimed=False)

        now = self._clock()
        if state.claimed_until and state.claimed_until > now:
            log_event(
                logger,
                "job.advance.busy",
                claimed_until=state.claimed_until.isoformat(),
                offset=state.offset,
            )
            return _result(state, done=False, claimed=False)

        claimed = self._update(
            state,
            expected_version=state.version,
            status=JobStatus.RUNNING,
            claimed_until=now + self._lease,
            updated_at=now,
        )
        if not claimed:
            log_event(logger, "job.advance.claim_lost", offset=state.offset)
            return _result(state, done=False, claimed=False)

        claim = _Claim(version=state.version + 1)
        try:
            return self._run_chunk(state, claim=claim)
        except AdvanceError as e:
            self._record_chunk_failure(state, claim=claim, error=e)
            raise

    def _run_chunk(self, state: JobState, *, claim: _Claim) -> AdvanceResult:
        start = time.monotonic()
        log_event(
            logger,
            "job.advance.start",
            period=state.period,
            offset=state.offset,
            overwrite=state.overwrite,
        )
        items = self._resolve_items(state.period)

        snapshot: list[str] | None = None
        item_ids = state.item_ids
        if item_ids is None:
            item_ids = tuple(item.item_id for item in items)
            snapshot = list(item_ids)

        if not item_ids:
            now = self._clock()
            persisted = self._update(
                state,
                expected_version=claim.version,
                status=JobStatus.COMPLETED,
                total=0,
                offset=0,
                item_ids=snapshot if snapshot is not None else [],
                claimed_until=None,
                chunk_failures=0,
                last_error=None,
                updated_at=now,
                completed_at=now,
            )
            if not persisted:
                return self._stale(state)
            log_event(logger, "job.advance.finish", total=0, offset=0, done=True)
            return AdvanceResult(
                job_id=state.id, done=True, status=JobStatus.COMPLETED, offset=0, total=0
            )

        by_id: dict[str, WorkItem] = {}
        for item in items:
            by_id.setdefault(item.item_id, item)

        total = len(item_ids)
        chunk_ids = list(item_ids[state.offset : state.offset + self._chunk_size])
        skip = set()
        if not state.overwrite and chunk_ids:
            skip = self._existing_verdicts(chunk_ids)

        tally = ItemTally()
        self._pacer.reset()
        for item_id in chunk_ids:
            self._pacer.wait()
            if not self._renew_lease(state, claim=claim):
                log_event(logger, "job.advance.lease_lost", offset=state.offset, item_id=item_id)
                return self._stale(state)
            if item_id in skip:
                tally.processed += 1
                continue
            item = by_id.get(item_id)
            if item is None:
                tally.fail(item_id=item_id, display_name=None, message=NO_LONGER_LISTED_MESSAGE)
                continue
            message = self._verify_one(item)
            if message is None:
                tally.processed += 1
            else:
                tally.fail(item_id=item_id, display_name=item.display_name, message=message)

        new_offset = state.offset + len(chunk_ids)
        is_complete = new_offset >= total
        status = JobStatus.COMPLETED if is_complete else JobStatus.RUNNING
        now = self._clock()
        fields: dict[str, Any] = {
            "total": total,
            "offset": new_offset,
            "processed": state.processed + tally.processed,
            "failed_count": state.failed_count + tally.failed,
            "errors": [*state.errors, *tally.errors],
            "status": status,
            "claimed_until": None,
            "chunk_failures": 0,
            "last_error": None,
            "updated_at": now,
            "completed_at": now if is_complete else None,
        }
        if snapshot is not None:
            fields["item_ids"] = snapshot
        if not self._update(state, expected_version=claim.version, **fields):
            return self._stale(state)

        log_event(
            logger,
            "job.advance.finish",
            offset=new_offset,
            total=total,
            processed_delta=tally.processed,
            failed_delta=tally.failed,
            skipped=len(skip),
            done=is_complete,
            duration_ms=monotonic_ms(start),
        )
        return AdvanceResult(
            job_id=state.id, done=is_complete, status=status, offset=new_offset, total=total
        )

    def verify_items(self, items: list[WorkItem]) -> ItemTally:
        """
        Verify ``items`` in order without a job record, paced like a chunk.

        Existing verdicts are always replaced. Used by the stateless bulk
        endpoint, where the caller carries the offset itself.
        """
        tally = ItemTally()
        self._pacer.reset()
        for item in items:
            self._pacer.wait()
            message = self._verify_one(item)
            if message is None:
                tally.processed += 1
            else:
                tally.fail(item_id=item.item_id, display_name=item.display_name, message=message)
        return tally

    def _verify_one(self, item: WorkItem) -> str | None:
        """Returns None on success, otherwise the failure message for the job's error list."""
        if not (item.receipt_url or "").strip():
            return MISSING_RECEIPT_MESSAGE
        # An empty tool name is still sent for checking; only an absent one is rejected.
        if item.tool is None or not item.period:
            return MISSING_METADATA_MESSAGE

        request = VerificationRequest(
            tool=item.tool,
            amount=item.amount,
            period=item.period,
            purpose=item.purpose or "",
        )
        try:
            body, mime_type = self._fetch_receipt(item.receipt_url)
            verdict = self._verify(body, mime_type, request)
            with self._session_factory() as session:
                upsert_verdict(
                    session, item_id=item.item_id, verdict=verdict, model=settings.openai_model
                )
        except Exception as e:  # noqa: BLE001
            message = str(e) or type(e).__name__
            log_event(
                logger,
                "job.advance.item_failed",
                item_id=item.item_id,
                error_type=type(e).__name__,
                error=message,
            )
            return message
        return None

    def _existing_verdicts(self, item_ids: list[str]) -> set[str]:
        try:
            with self._session_factory() as session:
                return lookup_existing_verdicts(session, item_ids=item_ids)
        except SQLAlchemyError as e:
            raise JobStorageError(f"Could not look up existing verdicts: {e}") from e

    def _update(self, state: JobState, *, expected_version: int, **fields: Any) -> bool:
        with self._session_factory() as session:
            return update_job(
                session, job_id=state.id, expected_version=expected_version, **fields
            )

    def _stale(self, state: JobState) -> AdvanceResult:
        # Our lease ran out and someone else moved the job on; their write stands.
        log_event(logger, "job.advance.stale", offset=state.offset)
        return _result(state, done=False, claimed=False)

    def _renew_lease(self, state: JobState, *, claim: _Claim) -> bool:
        """Push the lease out by a full term before each item; False once someone else holds the job."""
        now = self._clock()
        renewed = self._update(
            state,
            expected_version=claim.version,
            claimed_until=now + self._lease,
            updated_at=now,
        )
        if renewed:
            claim.version += 1
        return renewed

    def _record_chunk_failure(self, state: JobState, *, claim: _Claim, error: AdvanceError) -> None:
        failures = state.chunk_failures + 1
        terminal = failures >= self._max_chunk_failures
        now = self._clock()
        fields: dict[str, Any] = {
            "chunk_failures": failures,
            "last_error": str(error),
            "claimed_until": None,
            "updated_at": now,
        }
        if terminal:
            fields["status"] = JobStatus.FAILED
            fields["completed_at"] = now
        try:
            self._update(state, expected_version=claim.version, **fields)
        except JobStorageError:
            log_exception(logger, "job.advance.chunk_failure_unrecorded", error_kind=error.kind)
            return

        log_event(
            logger,
            "job.failed" if terminal else "job.advance.chunk_failed",
            error_kind=error.kind,
            error=str(error),
            chunk_failures=failures,
        )


def _result(state: JobState, *, done: bool, claimed: bool) -> AdvanceResult:
    return AdvanceResult(
        job_id=state.id,
        done=done,
        claimed=claimed,
        status=state.status,
        offset=state.offset,
        total=state.total,
    )


def advance_job(job_id: uuid.UUID | str) -> AdvanceResult:
    return ChunkProcessor().advance(job_id)

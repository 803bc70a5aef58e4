from __future__ import annotations

from datetime import timedelta

import pytest

from receipt_check.core.db import SessionLocal
from receipt_check.core.models import utcnow
from receipt_check.modules.jobs import processor as processor_module
from receipt_check.modules.jobs.errors import SourceUnavailable
from receipt_check.modules.jobs.models import JobStatus
from receipt_check.modules.jobs.processor import NO_LONGER_LISTED_MESSAGE
from receipt_check.modules.jobs.store import update_job


def test_update_job_is_conditioned_on_version(new_job, read_job):
    job_id = new_job()

    with SessionLocal() as session:
        assert update_job(session, job_id=job_id, expected_version=0, total=5) is True
        assert update_job(session, job_id=job_id, expected_version=0, total=99) is False

    job = read_job(job_id)
    assert job.total == 5
    assert job.version == 1


def test_active_lease_makes_second_caller_a_no_op(make_items, build_processor, new_job, read_job):
    resolved: list[str] = []

    def _resolve(period: str):
        resolved.append(period)
        return make_items(12)

    job_id = new_job()
    with SessionLocal() as session:
        update_job(
            session,
            job_id=job_id,
            expected_version=0,
            status=JobStatus.RUNNING,
            claimed_until=utcnow() + timedelta(seconds=60),
        )

    result = build_processor(_resolve).advance(job_id)
    job = read_job(job_id)

    assert result.claimed is False
    assert result.done is False
    assert resolved == []
    assert job.offset == 0
    assert job.version == 1


def test_expired_lease_is_taken_over(make_items, build_processor, new_job, read_job):
    job_id = new_job()
    with SessionLocal() as session:
        update_job(
            session,
            job_id=job_id,
            expected_version=0,
            status=JobStatus.RUNNING,
            claimed_until=utcnow() - timedelta(seconds=1),
        )

    result = build_processor(make_items(12)).advance(job_id)
    job = read_job(job_id)

    assert result.claimed is True
    assert job.offset == 10
    assert job.claimed_until is None


def test_losing_the_claim_race_does_no_work(
    monkeypatch, make_items, build_processor, new_job, read_job, verifier
):
    job_id = new_job()
    real_load = processor_module.load_job_state

    def _racing_load(session, *, job_id):
        state = real_load(session, job_id=job_id)
        # Another caller claims the job between our read and our claim.
        with SessionLocal() as other:
            update_job(
                other,
                job_id=state.id,
                expected_version=state.version,
                status=JobStatus.RUNNING,
            )
        return state

    monkeypatch.setattr(processor_module, "load_job_state", _racing_load)

    result = build_processor(make_items(5)).advance(job_id)
    job = read_job(job_id)

    assert result.claimed is False
    assert verifier.calls == []
    assert job.offset == 0
    assert job.processed == 0


def test_stale_final_write_is_dropped(make_items, build_processor, new_job, read_job, verifier):
    job_id = new_job()

    def _verify(body, mime_type, request):
        verdict = verifier.verify(body, mime_type, request)
        if len(verifier.calls) == 3:
            # Lease expired during the last item and another caller persisted its own progress.
            with SessionLocal() as other:
                current = read_job(job_id)
                update_job(
                    other,
                    job_id=job_id,
                    expected_version=current.version,
                    offset=3,
                    total=3,
                    processed=3,
                )
        return verdict

    result = build_processor(make_items(3), verify=_verify).advance(job_id)
    job = read_job(job_id)

    assert result.claimed is False
    assert result.done is False
    assert job.offset == 3
    assert job.processed == 3
    assert job.item_ids is None


class _SteppingClock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now


def test_slow_chunk_keeps_its_lease(make_items, build_processor, new_job, read_job, verifier):
    clock = _SteppingClock()
    items = make_items(10)
    job_id = new_job()
    second_caller = build_processor(items, clock=clock)
    overlapping = []

    def _slow_verify(body, mime_type, request):
        clock.now += timedelta(seconds=20)
        if len(verifier.calls) == 9:
            # 200 s into a chunk with a 180 s lease.
            overlapping.append(second_caller.advance(job_id))
        return verifier.verify(body, mime_type, request)

    first = build_processor(items, verify=_slow_verify, clock=clock, claim_lease_seconds=180)
    result = first.advance(job_id)
    job = read_job(job_id)

    assert overlapping[0].claimed is False
    assert result.claimed is True
    assert job.offset == 10
    assert job.processed == 10
    assert len(verifier.calls) == 10
    assert len(set(verifier.calls)) == 10


def test_lost_lease_abandons_rest_of_chunk(make_items, build_processor, new_job, read_job, verifier):
    job_id = new_job()

    def _verify(body, mime_type, request):
        verdict = verifier.verify(body, mime_type, request)
        if len(verifier.calls) == 1:
            with SessionLocal() as other:
                current = read_job(job_id)
                update_job(other, job_id=job_id, expected_version=current.version)
        return verdict

    result = build_processor(make_items(5), verify=_verify).advance(job_id)
    job = read_job(job_id)

    assert result.claimed is False
    assert len(verifier.calls) == 1
    assert job.offset == 0
    assert job.processed == 0


def test_chunk_failure_leaves_progress_and_counts_untouched(
    make_items, build_processor, new_job, read_job
):
    calls = {"n": 0}

    def _resolve(period: str):
        calls["n"] += 1
        if calls["n"] == 2:
            raise SourceUnavailable("Work item listing failed: 503")
        return make_items(15)

    processor = build_processor(_resolve, max_chunk_failures=3)
    job_id = new_job()
    processor.advance(job_id)

    with pytest.raises(SourceUnavailable):
        processor.advance(job_id)
    job = read_job(job_id)
    assert job.offset == 10
    assert job.processed == 10
    assert job.status == JobStatus.RUNNING
    assert job.chunk_failures == 1
    assert job.last_error == "Work item listing failed: 503"
    assert job.claimed_until is None

    assert processor.advance(job_id).done is True
    job = read_job(job_id)
    assert job.offset == 15
    assert job.chunk_failures == 0
    assert job.last_error is None


def test_repeated_chunk_failures_fail_the_job(build_processor, new_job, read_job):
    def _resolve(period: str):
        raise SourceUnavailable("Work item source is not configured")

    processor = build_processor(_resolve, max_chunk_failures=2)
    job_id = new_job()

    with pytest.raises(SourceUnavailable):
        processor.advance(job_id)
    assert read_job(job_id).status == JobStatus.RUNNING

    with pytest.raises(SourceUnavailable):
        processor.advance(job_id)
    job = read_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.completed_at is not None
    assert job.last_error == "Work item source is not configured"

    result = processor.advance(job_id)
    assert result.done is True
    assert result.status == JobStatus.FAILED


def test_snapshot_keeps_order_when_listing_changes(make_items, build_processor, new_job, read_job):
    original = make_items(12)
    listings = [original]

    def _resolve(period: str):
        return listings[-1]

    processor = build_processor(_resolve)
    job_id = new_job()
    processor.advance(job_id)

    # Upstream drops APP-011, prepends a new application and appends another.
    changed = [*make_items(1, prefix="NEW"), *original[:10], original[11], *make_items(1, prefix="LATE")]
    listings.append(changed)

    assert processor.advance(job_id).done is True
    job = read_job(job_id)

    assert job.total == 12
    assert job.offset == 12
    assert job.processed == 11
    assert job.errors == [
        {"item_id": "APP-011", "display_name": None, "message": NO_LONGER_LISTED_MESSAGE}
    ]
    assert job.item_ids == [i.item_id for i in original]

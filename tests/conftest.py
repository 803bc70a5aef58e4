from __future__ import annotations

import os

import pytest

# Set env before any receipt_check imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.receipt_check_test.db")
os.environ.setdefault("WORK_ITEM_SOURCE_URL", "https://script.example.test/exec")
os.environ["OPENAI_API_KEY"] = ""


@pytest.fixture(autouse=True)
def _reset_db() -> None:
    import receipt_check.models  # noqa: F401
    from receipt_check.core.db import engine
    from receipt_check.core.models import Base

    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@pytest.fixture
def make_items():
    from receipt_check.modules.sources.schemas import WorkItem

    def _make(count: int, *, period: str = "2026-01", prefix: str = "APP") -> list[WorkItem]:
        return [
            WorkItem(
                item_id=f"{prefix}-{i:03d}",
                display_name=f"Employee {i}",
                receipt_url=f"https://receipts.example.test/{prefix}-{i:03d}.pdf",
                tool="ChatGPT Plus",
                amount=3000,
                period=period,
                purpose="research",
            )
            for i in range(1, count + 1)
        ]

    return _make


class RecordingVerifier:
    def __init__(self, *, fail_for: set[str] | None = None) -> None:
        self.calls: list[str] = []
        self._fail_for = fail_for or set()

    def fetch(self, ref: str) -> tuple[bytes, str]:
        return f"%PDF-1.4 {ref}".encode(), "application/pdf"

    def verify(self, body: bytes, mime_type: str, request):
        from receipt_check.modules.verification.errors import VerificationError
        from receipt_check.modules.verification.schemas import Verdict

        ref = body.decode().split(" ", 1)[1]
        self.calls.append(ref)
        if any(ref.endswith(f"{item_id}.pdf") for item_id in self._fail_for):
            raise VerificationError("model timed out")
        return Verdict(risk_level="low", summary=f"ok {request.tool}", confidence=0.9)


@pytest.fixture
def verifier() -> RecordingVerifier:
    return RecordingVerifier()


@pytest.fixture
def make_verifier():
    return RecordingVerifier


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def build_processor(verifier, sleeps):
    from receipt_check.modules.jobs.pacing import FixedIntervalPacer
    from receipt_check.modules.jobs.processor import ChunkProcessor

    def _build(items, **overrides):
        source = items if callable(items) else (lambda _period: list(items))
        overrides.setdefault("resolve_items", source)
        overrides.setdefault("fetch_receipt", verifier.fetch)
        overrides.setdefault("verify", verifier.verify)
        overrides.setdefault("pacer", FixedIntervalPacer(1.5, sleep=sleeps.append))
        overrides.setdefault("chunk_size", 10)
        return ChunkProcessor(**overrides)

    return _build


@pytest.fixture
def new_job():
    from receipt_check.core.db import SessionLocal
    from receipt_check.modules.jobs.store import create_job

    def _create(period: str = "2026-01", *, overwrite: bool = False):
        with SessionLocal() as session:
            return create_job(session, period=period, overwrite=overwrite).id

    return _create


@pytest.fixture
def read_job():
    from receipt_check.core.db import SessionLocal
    from receipt_check.modules.jobs.store import get_job

    def _read(job_id):
        with SessionLocal() as session:
            job = get_job(session, job_id=job_id)
            assert job is not None
            session.expunge(job)
            return job

    return _read

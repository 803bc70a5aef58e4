from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from sqlalchemy.orm import Session

from receipt_check.core.config import settings
from receipt_check.core.db import SessionLocal
from receipt_check.modules.jobs.errors import (
    AdvanceError,
    JobNotFound,
    JobStorageError,
    SourceUnavailable,
)
from receipt_check.modules.jobs.processor import ChunkProcessor
from receipt_check.modules.jobs.schemas import AdvanceOut, DispatchOut, JobOut
from receipt_check.modules.jobs.store import get_job


class TransportError(AdvanceError):
    kind = "transport_error"


class JobClient(Protocol):
    def advance(self, job_id: uuid.UUID | str) -> AdvanceOut: ...

    def get(self, job_id: uuid.UUID | str) -> JobOut: ...


class LocalJobClient:
    """Drives jobs in-process against the configured database."""

    def __init__(
        self,
        *,
        processor: ChunkProcessor | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self._processor = processor or ChunkProcessor(session_factory=session_factory)
        self._session_factory = session_factory

    def advance(self, job_id: uuid.UUID | str) -> AdvanceOut:
        result = self._processor.advance(job_id)
        return AdvanceOut(
            job_id=result.job_id,
            done=result.done,
            claimed=result.claimed,
            status=result.status,
            offset=result.offset,
            total=result.total,
        )

    def get(self, job_id: uuid.UUID | str) -> JobOut:
        with self._session_factory() as session:
            job = get_job(session, job_id=job_id)
            if not job:
                raise JobNotFound(f"Job not found: {job_id}")
            return JobOut.model_validate(job, from_attributes=True)


_STATUS_ERRORS: dict[int, type[AdvanceError]] = {
    404: JobNotFound,
    502: SourceUnavailable,
    503: JobStorageError,
}


class HttpJobClient:
    """Talks to the jobs HTTP API, as the CLI and any browser poller do."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.Client | None = None,
        timeout: float = 300.0,
    ) -> None:
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def advance(self, job_id: uuid.UUID | str) -> AdvanceOut:
        return AdvanceOut.model_validate(self._request("POST", f"/api/jobs/{job_id}/advance"))

    def get(self, job_id: uuid.UUID | str) -> JobOut:
        return JobOut.model_validate(self._request("GET", f"/api/jobs/{job_id}"))

    def create(self, *, period: str, overwrite: bool = False) -> JobOut:
        body = self._request("POST", "/api/jobs", json={"period": period, "overwrite": overwrite})
        return JobOut.model_validate(body)

    def list_jobs(self, *, limit: int = 20) -> list[JobOut]:
        rows = self._request("GET", "/api/jobs", params={"limit": limit})
        return [JobOut.model_validate(r) for r in rows]

    def dispatch_next(self) -> DispatchOut:
        return DispatchOut.model_validate(self._request("POST", "/api/jobs/dispatch-next"))

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self._client.request(method, self._base_url + path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        if resp.is_success:
            return resp.json()
        error_cls = _STATUS_ERRORS.get(resp.status_code, TransportError)
        raise error_cls(_detail(resp))


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {resp.status_code}"

from __future__ import annotations

import uuid

import pytest

from receipt_check.modules.jobs.errors import SourceUnavailable


@pytest.fixture
def listing(make_items):
    return {"items": make_items(12)}


@pytest.fixture
def api(monkeypatch, listing, verifier):
    from fastapi.testclient import TestClient

    from receipt_check.core.config import settings
    from receipt_check.main import app
    from receipt_check.modules.jobs import processor as processor_module
    from receipt_check.modules.sources import service as sources_service

    def _resolve(period: str):
        if isinstance(listing["items"], Exception):
            raise listing["items"]
        return list(listing["items"])

    monkeypatch.setattr(settings, "pacing_interval_ms", 0)
    monkeypatch.setattr(sources_service, "resolve_work_items", _resolve)
    monkeypatch.setattr(processor_module, "resolve_work_items", _resolve)
    monkeypatch.setattr(processor_module, "fetch_receipt_bytes", verifier.fetch)
    monkeypatch.setattr(processor_module, "verify_receipt", verifier.verify)

    return TestClient(app)


def test_create_job_rejects_bad_period(api):
    resp = api.post("/api/jobs", json={"period": "January"})
    assert resp.status_code == 400
    assert "YYYY-MM" in resp.text


def test_create_job_reports_eager_total(api):
    resp = api.post("/api/jobs", json={"period": "2026-01", "overwrite": True})
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "queued"
    assert body["total"] == 12
    assert body["offset"] == 0
    assert body["overwrite"] is True
    assert body["errors"] == []


def test_create_job_when_source_is_down(api, listing):
    listing["items"] = SourceUnavailable("Work item listing failed: 503")

    resp = api.post("/api/jobs", json={"period": "2026-01"})

    assert resp.status_code == 502
    assert resp.json()["detail"] == "Work item listing failed: 503"


def test_advance_until_done_then_read(api):
    job_id = api.post("/api/jobs", json={"period": "2026-01"}).json()["id"]

    first = api.post(f"/api/jobs/{job_id}/advance")
    assert first.status_code == 200
    assert first.json()["done"] is False
    assert first.json()["offset"] == 10

    second = api.post(f"/api/jobs/{job_id}/advance").json()
    assert second["done"] is True
    assert second["status"] == "completed"

    job = api.get(f"/api/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["processed"] == 12
    assert job["completed_at"] is not None


def test_advance_surfaces_source_outage_as_bad_gateway(api, listing):
    job_id = api.post("/api/jobs", json={"period": "2026-01"}).json()["id"]
    listing["items"] = SourceUnavailable("Work item source is not configured")

    resp = api.post(f"/api/jobs/{job_id}/advance")

    assert resp.status_code == 502
    job = api.get(f"/api/jobs/{job_id}").json()
    assert job["offset"] == 0
    assert job["chunk_failures"] == 1
    assert job["last_error"] == "Work item source is not configured"


def test_unknown_job_is_404(api):
    missing = uuid.uuid4()
    assert api.get(f"/api/jobs/{missing}").status_code == 404
    assert api.post(f"/api/jobs/{missing}/advance").status_code == 404
    assert api.delete(f"/api/jobs/{missing}").status_code == 404
    assert api.post(f"/api/jobs/{missing}/enqueue").status_code == 404


def test_malformed_job_id_is_404_not_422(api):
    for method, path in [
        ("GET", "/api/jobs/not-a-uuid"),
        ("DELETE", "/api/jobs/not-a-uuid"),
        ("POST", "/api/jobs/not-a-uuid/advance"),
        ("POST", "/api/jobs/not-a-uuid/enqueue"),
    ]:
        assert api.request(method, path).status_code == 404, path


def test_list_and_delete_jobs(api):
    ids = [api.post("/api/jobs", json={"period": f"2026-0{m}"}).json()["id"] for m in (1, 2, 3)]

    listed = api.get("/api/jobs", params={"limit": 2}).json()
    assert len(listed) == 2
    assert {j["id"] for j in api.get("/api/jobs").json()} == set(ids)

    assert api.delete(f"/api/jobs/{ids[0]}").status_code == 204
    assert api.get(f"/api/jobs/{ids[0]}").status_code == 404
    assert len(api.get("/api/jobs").json()) == 2


def test_dispatch_next_endpoint(api):
    empty = api.post("/api/jobs/dispatch-next").json()
    assert empty == {"dispatched": False, "job_id": None, "done": None, "error": None}

    job_id = api.post("/api/jobs", json={"period": "2026-01"}).json()["id"]
    resp = api.post("/api/jobs/dispatch-next").json()

    assert resp["dispatched"] is True
    assert resp["job_id"] == job_id
    assert resp["done"] is False


def test_enqueue_runs_a_chunk_eagerly_in_tests(api):
    job_id = api.post("/api/jobs", json={"period": "2026-01"}).json()["id"]

    resp = api.post(f"/api/jobs/{job_id}/enqueue")

    assert resp.status_code == 200
    assert resp.json()["job_id"] == job_id
    assert api.get(f"/api/jobs/{job_id}").json()["offset"] == 10


def test_healthz(api):
    assert api.get("/healthz").json() == {"status": "ok"}

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from receipt_check.cli import app

runner = CliRunner()


@pytest.fixture
def local_processing(monkeypatch, make_items, make_verifier):
    from receipt_check.core.config import settings
    from receipt_check.modules.jobs import processor as processor_module

    failing = make_verifier(fail_for={"APP-004"})
    monkeypatch.setattr(settings, "pacing_interval_ms", 0)
    monkeypatch.setattr(settings, "driver_interval_ms", 0)
    monkeypatch.setattr(processor_module, "resolve_work_items", lambda period: make_items(14))
    monkeypatch.setattr(processor_module, "fetch_receipt_bytes", failing.fetch)
    monkeypatch.setattr(processor_module, "verify_receipt", failing.verify)


def test_drive_local_prints_progress_and_failures(local_processing, new_job, read_job):
    job_id = new_job()

    result = runner.invoke(app, ["drive", str(job_id), "--local"])

    assert result.exit_code == 0, result.output
    assert "[running] 2026-01: 10/14 considered, 9 ok, 1 failed" in result.output
    assert "[completed] 2026-01: 14/14 considered, 13 ok, 1 failed" in result.output
    assert "Employee 4: model timed out" in result.output
    assert read_job(job_id).offset == 14


def test_drive_local_unknown_job_exits_nonzero(local_processing):
    result = runner.invoke(app, ["drive", "2f1d3c4b-0000-4000-8000-000000000000", "--local"])

    assert result.exit_code == 1
    assert "not_found" in result.output

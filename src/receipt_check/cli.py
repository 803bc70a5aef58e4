"""`receipt-check` command line: create, drive and inspect verification jobs."""

from __future__ import annotations

import signal
import threading

import typer

from receipt_check.core.config import settings
from receipt_check.modules.jobs.clients import HttpJobClient, JobClient, LocalJobClient
from receipt_check.modules.jobs.driver import DriveOutcome, DriveStatus, JobDriver
from receipt_check.modules.jobs.errors import AdvanceError
from receipt_check.modules.jobs.schemas import JobOut

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Batch AI verification of expense receipts, one chunk at a time.",
)

BaseUrlOption = typer.Option(
    None, "--base-url", envvar="BASE_URL", help="API base URL (default: settings.api_base_url)."
)


def _progress(job: JobOut) -> None:
    typer.echo(
        f"[{job.status.value}] {job.period}: {job.offset}/{job.total} considered, "
        f"{job.processed} ok, {job.failed_count} failed"
    )


def _report(outcome: DriveOutcome) -> None:
    job = outcome.job
    if outcome.status is DriveStatus.HALTED:
        typer.echo(f"error: {outcome.error}", err=True)
        typer.echo("The job is resumable; run `receipt-check drive` again to continue.", err=True)
        raise typer.Exit(code=1)
    if outcome.status is DriveStatus.CANCELLED:
        typer.echo("Stopped. The job stays resumable from its last saved position.")
        return
    if job is None:
        return
    typer.echo(f"\nTotal: {job.processed} ok, {job.failed_count} failed")
    if job.errors:
        typer.echo("Failed applications:")
        for err in job.errors:
            typer.echo(f"  - {err.display_name or err.item_id}: {err.message}")


def _drive(client: JobClient, job_id: str) -> DriveOutcome:
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        return JobDriver(client, on_update=_progress).run(job_id, cancel)
    finally:
        signal.signal(signal.SIGINT, previous)


@app.command(name="run", help="Create a job for PERIOD (YYYY-MM) and drive it to completion.")
def run(
    period: str = typer.Argument(..., help="Target month, e.g. 2026-01."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Re-verify items with a verdict."),
    base_url: str | None = BaseUrlOption,
) -> None:
    client = HttpJobClient(base_url)
    try:
        try:
            job = client.create(period=period, overwrite=overwrite)
        except AdvanceError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(code=1) from e
        typer.echo(f"Job {job.id} for {job.period} ({job.total} applications listed)")
        _report(_drive(client, str(job.id)))
    finally:
        client.close()


@app.command(name="drive", help="Resume an existing job until it completes.")
def drive(
    job_id: str = typer.Argument(..., help="Job id."),
    local: bool = typer.Option(False, "--local", help="Advance in-process instead of via the API."),
    base_url: str | None = BaseUrlOption,
) -> None:
    if local:
        _report(_drive(LocalJobClient(), job_id))
        return
    client = HttpJobClient(base_url)
    try:
        _report(_drive(client, job_id))
    finally:
        client.close()


@app.command(name="dispatch", help="Advance the oldest unfinished job by one chunk.")
def dispatch(base_url: str | None = BaseUrlOption) -> None:
    client = HttpJobClient(base_url)
    try:
        result = client.dispatch_next()
    except AdvanceError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        client.close()
    if not result.dispatched:
        typer.echo("No queued or running jobs.")
        return
    suffix = f" (error: {result.error})" if result.error else ""
    typer.echo(f"Advanced job {result.job_id}; done={result.done}{suffix}")


@app.command(name="jobs", help="List recent jobs, newest first.")
def jobs(
    limit: int = typer.Option(20, "--limit", min=1, max=50),
    base_url: str | None = BaseUrlOption,
) -> None:
    client = HttpJobClient(base_url)
    try:
        rows = client.list_jobs(limit=limit)
    except AdvanceError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        client.close()
    if not rows:
        typer.echo(f"No jobs at {base_url or settings.api_base_url}.")
        return
    for job in rows:
        typer.echo(
            f"{job.id}  {job.period}  {job.status.value:<9}  "
            f"{job.offset}/{job.total}  ok={job.processed} failed={job.failed_count}"
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()

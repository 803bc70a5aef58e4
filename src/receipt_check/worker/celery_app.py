from __future__ import annotations

from celery import Celery

from receipt_check.core.config import settings


def make_celery() -> Celery:
    app = Celery("receipt_check", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        beat_schedule={
            "dispatch-next-job-chunk": {
                "task": "dispatch_next",
                "schedule": float(settings.dispatch_interval_seconds),
            },
        },
    )
    app.autodiscover_tasks(["receipt_check.worker.tasks"])
    return app


celery_app = make_celery()

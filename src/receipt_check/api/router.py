from __future__ import annotations

from fastapi import APIRouter

from receipt_check.modules.jobs.api import router as jobs_router
from receipt_check.modules.results.api import router as results_router

router = APIRouter()

router.include_router(jobs_router, prefix="/api")
router.include_router(results_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}

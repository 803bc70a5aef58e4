from __future__ import annotations

import re

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from receipt_check.core.config import settings
from receipt_check.core.db import db_session
from receipt_check.core.logging import get_logger, log_event
from receipt_check.modules.jobs import processor as processor_module
from receipt_check.modules.jobs.errors import SourceUnavailable
from receipt_check.modules.jobs.schemas import PERIOD_PATTERN
from receipt_check.modules.results.service import get_verdict, upsert_verdict
from receipt_check.modules.sources import service as sources_service
from receipt_check.modules.verification import ai, receipts
from receipt_check.modules.verification.errors import FetchError, VerificationError
from receipt_check.modules.verification.schemas import (
    BulkVerifyIn,
    BulkVerifyOut,
    Verdict,
    VerificationRequest,
    VerifyIn,
    VerifyOut,
)

router = APIRouter(tags=["verifications"])
logger = get_logger(__name__)


@router.post("/verifications", response_model=VerifyOut)
def verify_endpoint(
    payload: VerifyIn,
    session: Session = Depends(db_session),
) -> VerifyOut:
    if not payload.receipt_url.strip() or not payload.tool.strip() or not payload.period.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields"
        )

    item_id = (payload.item_id or "").strip() or None
    if item_id:
        cached = get_verdict(session, item_id=item_id)
        if cached:
            log_event(logger, "verification.cache.hit", item_id=item_id)
            return VerifyOut(item_id=item_id, verdict=cached, cached=True)

    try:
        body, mime_type = receipts.fetch_receipt_bytes(payload.receipt_url)
        verdict = ai.verify_receipt(
            body,
            mime_type,
            VerificationRequest(
                tool=payload.tool,
                amount=payload.amount,
                period=payload.period,
                purpose=payload.purpose or "",
            ),
        )
    except FetchError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except VerificationError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    if item_id:
        upsert_verdict(session, item_id=item_id, verdict=verdict, model=settings.openai_model)
    return VerifyOut(item_id=item_id, verdict=verdict, cached=False)


@router.post("/verifications/bulk", response_model=BulkVerifyOut)
def bulk_verify_endpoint(payload: BulkVerifyIn) -> BulkVerifyOut:
    """
    Verify one slice of a period without creating a job.

    The caller carries `next_offset` between requests. Existing verdicts are
    replaced; use a job when skipping or resuming matters.
    """
    period = payload.period.strip()
    if not re.match(PERIOD_PATTERN, period):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="period must be a month in YYYY-MM form",
        )
    limit = min(50, max(1, payload.limit))
    offset = max(0, payload.offset)

    try:
        items = sources_service.resolve_work_items(period)
    except SourceUnavailable as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    if not items:
        return BulkVerifyOut(
            total=0, processed=0, failed=0, message=f"No applications listed for {period}"
        )

    batch = items[offset : offset + limit]
    tally = processor_module.ChunkProcessor().verify_items(batch)
    next_offset = offset + limit if offset + limit < len(items) else None
    if next_offset is None:
        message = f"Checked {period}: {tally.processed} ok, {tally.failed} failed"
    else:
        message = f"Checked items {offset + 1}-{offset + len(batch)} of {period}; more remain"
    log_event(
        logger,
        "verification.bulk.finish",
        period=period,
        offset=offset,
        limit=limit,
        processed=tally.processed,
        failed=tally.failed,
    )
    return BulkVerifyOut(
        total=len(items),
        processed=tally.processed,
        failed=tally.failed,
        errors=tally.errors,
        next_offset=next_offset,
        message=message,
    )


@router.get("/verifications/{item_id}", response_model=Verdict)
def get_verification_endpoint(
    item_id: str,
    session: Session = Depends(db_session),
) -> Verdict:
    verdict = get_verdict(session, item_id=item_id)
    if not verdict:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No verdict stored")
    return verdict

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from receipt_check.modules.results.models import VerificationResult
from receipt_check.modules.verification.schemas import Verdict


def upsert_verdict(
    session: Session, *, item_id: str, verdict: Verdict, model: str = ""
) -> VerificationResult:
    row = session.scalar(select(VerificationResult).where(VerificationResult.item_id == item_id))
    if not row:
        row = VerificationResult(item_id=item_id, model=model, result=verdict.model_dump())
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # Another chunk inserted the same item first; last write wins.
            session.rollback()
            row = session.scalar(
                select(VerificationResult).where(VerificationResult.item_id == item_id)
            )
            if row is None:
                raise
            row.model = model
            row.result = verdict.model_dump()
            session.add(row)
            session.commit()
    else:
        row.model = model
        row.result = verdict.model_dump()
        session.add(row)
        session.commit()
    session.refresh(row)
    return row


def lookup_existing_verdicts(session: Session, *, item_ids: Iterable[str]) -> set[str]:
    ids = list(dict.fromkeys(item_ids))
    if not ids:
        return set()
    return set(
        session.scalars(
            select(VerificationResult.item_id).where(VerificationResult.item_id.in_(ids))
        )
    )


def get_verdict(session: Session, *, item_id: str) -> Verdict | None:
    row = session.scalar(select(VerificationResult).where(VerificationResult.item_id == item_id))
    if not row or not row.result:
        return None
    return Verdict.model_validate(row.result)

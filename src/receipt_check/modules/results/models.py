from __future__ import annotations

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from receipt_check.core.models import Base, Timestamped, UUIDPrimaryKey


class VerificationResult(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "results_verification_result"

    item_id: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    model: Mapped[str] = mapped_column(String(100), default="")
    result: Mapped[dict] = mapped_column(JSON, default=dict)

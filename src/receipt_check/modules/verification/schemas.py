from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class VerificationRequest(BaseModel):
    """What the application claims; the receipt is checked against it."""

    tool: str
    amount: float | None = None
    period: str
    purpose: str = ""


class Verdict(BaseModel):
    risk_level: Literal["low", "medium", "high"]
    summary: str = ""
    amount_matches: bool | None = None
    period_matches: bool | None = None
    tool_matches: bool | None = None
    detected_amount: float | None = None
    issues: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class VerifyIn(BaseModel):
    item_id: str | None = None
    receipt_url: str
    tool: str
    amount: float | None = None
    period: str
    purpose: str | None = None


class VerifyOut(BaseModel):
    item_id: str | None
    verdict: Verdict
    cached: bool = False


class BulkVerifyIn(BaseModel):
    period: str
    offset: int = 0
    limit: int = 10


class BulkItemError(BaseModel):
    item_id: str
    display_name: str | None = None
    message: str


class BulkVerifyOut(BaseModel):
    total: int
    processed: int
    failed: int
    errors: list[BulkItemError] = Field(default_factory=list)
    next_offset: int | None = None
    message: str

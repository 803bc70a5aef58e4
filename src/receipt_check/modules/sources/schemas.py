from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WorkItem(BaseModel):
    """One expense application as listed upstream for a month."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    item_id: str = Field(validation_alias=AliasChoices("applicationId", "item_id"))
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("employeeName", "display_name")
    )
    receipt_url: str | None = Field(
        default=None, validation_alias=AliasChoices("receiptUrl", "receipt_url")
    )
    tool: str | None = None
    amount: float | None = None
    period: str | None = Field(default=None, validation_alias=AliasChoices("targetMonth", "period"))
    purpose: str | None = None

    @field_validator("item_id", mode="before")
    @classmethod
    def _coerce_item_id(cls, value):
        if value is None:
            raise ValueError("applicationId is required")
        value = str(value).strip()
        if not value:
            raise ValueError("applicationId is required")
        return value

    @field_validator("tool", "period", "purpose", "display_name", "receipt_url", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return None
        return str(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str):
            value = value.replace(",", "").replace("¥", "").replace("円", "").strip()
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

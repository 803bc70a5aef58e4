from __future__ import annotations

import base64
import json
import re
import time
from typing import Any

import httpx
from pydantic import ValidationError

from receipt_check.core.config import settings
from receipt_check.core.logging import get_logger, log_event, monotonic_ms
from receipt_check.modules.verification.errors import VerificationError
from receipt_check.modules.verification.schemas import Verdict, VerificationRequest

logger = get_logger(__name__)

_RISK_LEVELS = ("low", "medium", "high")

_NULLABLE_BOOL: dict[str, Any] = {"anyOf": [{"type": "boolean"}, {"type": "null"}]}

_VERDICT_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "receipt_verdict",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "risk_level": {"type": "string", "enum": list(_RISK_LEVELS)},
                "summary": {"type": "string"},
                "amount_matches": _NULLABLE_BOOL,
                "period_matches": _NULLABLE_BOOL,
                "tool_matches": _NULLABLE_BOOL,
                "detected_amount": {"anyOf": [{"type": "number"}, {"type": "null"}]},
                "issues": {"type": "array", "items": {"type": "string"}, "maxItems": 10},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": [
                "risk_level",
                "summary",
                "amount_matches",
                "period_matches",
                "tool_matches",
                "detected_amount",
                "issues",
                "confidence",
            ],
        },
    },
}

_SYSTEM_PROMPT = (
    "You audit expense receipts for a reimbursement team.\n"
    "Compare the receipt with the application details you are given.\n"
    "Only use information visible on the receipt. Never guess.\n"
    "If something cannot be read, set the matching field to null and list it in issues.\n"
    "Return JSON only."
)


def verification_available() -> bool:
    return bool(settings.openai_api_key)


def verify_receipt(body: bytes, mime_type: str, request: VerificationRequest) -> Verdict:
    """
    Ask the model whether the receipt backs up the application.

    Raises VerificationError on every failure; the caller records the message
    against the work item.
    """
    if not verification_available():
        raise VerificationError("AI verification is not configured")

    payload = {
        "model": settings.openai_model,
        "temperature": 0,
        "response_format": _VERDICT_RESPONSE_FORMAT,
        "messages": [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": _user_content(body, mime_type, request)},
        ],
    }
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"

    start = time.monotonic()
    resp = _post(url, headers=headers, payload=payload)
    if resp.status_code in {400, 422}:
        # Some models/endpoints don't support Structured Outputs; fall back to JSON mode.
        payload["response_format"] = {"type": "json_object"}
        resp = _post(url, headers=headers, payload=payload)
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise VerificationError(f"AI verification failed with HTTP {resp.status_code}") from e

    try:
        msg = resp.json()["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise VerificationError("Unexpected AI response shape") from e
    if isinstance(msg, dict) and msg.get("refusal"):
        raise VerificationError(f"AI refused: {msg['refusal']}")
    content = msg.get("content") if isinstance(msg, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise VerificationError("AI returned an empty response")

    obj = _parse_json_object(content)
    if not isinstance(obj, dict):
        raise VerificationError("AI response was not a JSON object")
    verdict = sanitize_verdict(obj)

    log_event(
        logger,
        "verification.success",
        model=settings.openai_model,
        risk_level=verdict.risk_level,
        duration_ms=monotonic_ms(start),
    )
    return verdict


def _post(url: str, *, headers: dict[str, str], payload: dict[str, Any]) -> httpx.Response:
    try:
        return httpx.post(
            url,
            headers=headers,
            json=payload,
            timeout=float(settings.verification_timeout_seconds or 60.0),
            follow_redirects=True,
        )
    except httpx.HTTPError as e:
        raise VerificationError(f"AI verification request failed: {e}") from e


def _user_content(body: bytes, mime_type: str, request: VerificationRequest) -> list[dict[str, Any]]:
    amount = "unknown" if request.amount is None else f"{request.amount:g}"
    details = (
        "Application details:\n"
        f"- tool / service: {request.tool}\n"
        f"- claimed amount: {amount}\n"
        f"- target month: {request.period}\n"
        f"- purpose: {request.purpose or '-'}\n\n"
        "Check that the receipt is for this tool, that the amount matches, and that the "
        "billing date falls in the target month. risk_level is low when everything matches, "
        "medium when something cannot be confirmed, high when something contradicts the "
        "application."
    )
    encoded = base64.b64encode(body).decode("ascii")
    data_url = f"data:{mime_type};base64,{encoded}"
    if mime_type == "application/pdf":
        attachment = {
            "type": "file",
            "file": {"filename": "receipt.pdf", "file_data": data_url},
        }
    else:
        attachment = {"type": "image_url", "image_url": {"url": data_url}}
    return [{"type": "text", "text": details}, attachment]


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def sanitize_verdict(obj: dict[str, Any]) -> Verdict:
    risk = str(obj.get("risk_level") or "").strip().lower()
    if risk not in _RISK_LEVELS:
        raise VerificationError(f"AI returned an unknown risk level: {risk or 'none'}")

    issues_raw = obj.get("issues")
    issues = []
    if isinstance(issues_raw, list):
        issues = [str(i).strip() for i in issues_raw if str(i).strip()][:10]

    confidence = obj.get("confidence")
    try:
        confidence = min(max(float(confidence), 0.0), 1.0)
    except (TypeError, ValueError):
        confidence = 0.0

    detected = obj.get("detected_amount")
    try:
        detected = float(detected) if detected is not None else None
    except (TypeError, ValueError):
        detected = None

    try:
        return Verdict(
            risk_level=risk,
            summary=str(obj.get("summary") or "").strip(),
            amount_matches=_bool_or_none(obj.get("amount_matches")),
            period_matches=_bool_or_none(obj.get("period_matches")),
            tool_matches=_bool_or_none(obj.get("tool_matches")),
            detected_amount=detected,
            issues=issues,
            confidence=confidence,
        )
    except ValidationError as e:
        raise VerificationError(f"AI verdict failed validation: {e}") from e


def _bool_or_none(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "yes"}:
            return True
        if v in {"false", "no"}:
            return False
    return None

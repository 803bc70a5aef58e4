from __future__ import annotations

import time
from typing import Any

import httpx
from pydantic import ValidationError

from receipt_check.core.config import settings
from receipt_check.core.logging import get_logger, log_event, log_exception, monotonic_ms
from receipt_check.modules.jobs.errors import SourceUnavailable
from receipt_check.modules.sources.schemas import WorkItem

logger = get_logger(__name__)


def resolve_work_items(period: str, *, client: httpx.Client | None = None) -> list[WorkItem]:
    """
    List the applications filed for ``period`` in upstream order.

    The upstream endpoint answers either ``{"data": [...]}`` or a bare list of
    application objects. Anything else is treated as the source being down.
    """
    if not settings.work_item_source_url:
        raise SourceUnavailable("Work item source is not configured")

    params = {"month": period}
    if settings.work_item_source_token:
        params["token"] = settings.work_item_source_token

    start = time.monotonic()
    try:
        if client is None:
            resp = httpx.get(
                settings.work_item_source_url,
                params=params,
                timeout=settings.work_item_source_timeout_seconds,
                follow_redirects=True,
            )
        else:
            resp = client.get(settings.work_item_source_url, params=params)
        resp.raise_for_status()
        raw = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        log_exception(logger, "source.resolve.failure", period=period)
        raise SourceUnavailable(f"Work item listing failed: {e}") from e

    rows = _extract_rows(raw)
    if rows is None:
        log_event(logger, "source.resolve.bad_payload", period=period)
        raise SourceUnavailable("Unexpected work item listing shape")

    items: list[WorkItem] = []
    for row in rows:
        try:
            items.append(WorkItem.model_validate(row))
        except ValidationError as e:
            raise SourceUnavailable(f"Invalid work item in listing: {e}") from e

    log_event(
        logger,
        "source.resolve.success",
        period=period,
        count=len(items),
        duration_ms=monotonic_ms(start),
    )
    return items


def _extract_rows(raw: Any) -> list[Any] | None:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        if raw.get("success") is False:
            return None
        data = raw.get("data")
        if isinstance(data, list):
            return data
    return None

from __future__ import annotations

import re
import time

import httpx

from receipt_check.core.config import settings
from receipt_check.core.logging import get_logger, log_event, monotonic_ms
from receipt_check.modules.verification.errors import FetchError

logger = get_logger(__name__)

_DRIVE_PATH_ID = re.compile(r"/d/([a-zA-Z0-9_-]{25,})")
_DRIVE_QUERY_ID = re.compile(r"[?&]id=([a-zA-Z0-9_-]{25,})")

_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)

SUPPORTED_MIME_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/gif", "image/webp"}


def drive_file_id(url: str) -> str | None:
    if not url:
        return None
    u = url.strip()
    m = _DRIVE_PATH_ID.search(u) or _DRIVE_QUERY_ID.search(u)
    return m.group(1) if m else None


def download_url(ref: str) -> str:
    """Google Drive share links are rewritten to their direct-download form."""
    file_id = drive_file_id(ref)
    if file_id and "drive.google.com" in ref:
        return f"https://drive.google.com/uc?export=download&id={file_id}"
    return ref.strip()


def sniff_mime_type(body: bytes) -> str | None:
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    if b.startswith(b"%PDF"):
        return "application/pdf"
    for signature, mime in _IMAGE_SIGNATURES:
        if b.startswith(signature):
            return mime
    if len(b) >= 12 and b.startswith(b"RIFF") and b[8:12] == b"WEBP":
        return "image/webp"
    return None


def fetch_receipt_bytes(ref: str, *, client: httpx.Client | None = None) -> tuple[bytes, str]:
    url = download_url(ref)
    if not url.lower().startswith(("http://", "https://")):
        raise FetchError(f"Unsupported receipt reference: {ref}")

    start = time.monotonic()
    try:
        if client is None:
            resp = httpx.get(
                url,
                timeout=settings.receipt_fetch_timeout_seconds,
                follow_redirects=True,
            )
        else:
            resp = client.get(url)
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise FetchError(f"Receipt download failed with HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise FetchError(f"Receipt download failed: {e}") from e

    body = resp.content
    if not body:
        raise FetchError("Receipt download returned an empty body")
    if len(body) > settings.receipt_max_bytes:
        raise FetchError(f"Receipt is too large ({len(body)} bytes)")

    header_type = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
    mime_type = header_type if header_type in SUPPORTED_MIME_TYPES else sniff_mime_type(body)
    if not mime_type:
        # Drive serves an HTML interstitial for files it refuses to hand out directly.
        raise FetchError(f"Unsupported receipt content type: {header_type or 'unknown'}")

    log_event(
        logger,
        "receipt.fetch.success",
        mime_type=mime_type,
        byte_size=len(body),
        duration_ms=monotonic_ms(start),
    )
    return body, mime_type

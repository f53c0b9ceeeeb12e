"""Shared helpers for worker job handlers."""

from __future__ import annotations

from urllib.parse import urlsplit
from uuid import UUID


def safe_url(url: str | None) -> str:
    """Strip query string and fragment so tokens never reach the logs."""
    if not url:
        return ""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def payload_uuid(payload: dict, key: str) -> UUID:
    """Read a required UUID from a job payload; raises ValueError when absent or malformed."""
    raw = payload.get(key)
    if not raw:
        raise ValueError(f"Job payload missing {key}")
    return UUID(str(raw))

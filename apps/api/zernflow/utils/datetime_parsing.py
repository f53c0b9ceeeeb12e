"""Datetime helpers for provider payloads and segment rules."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(raw_value: str | None) -> datetime | None:
    """
    Parse an ISO 8601 timestamp or date into an aware UTC datetime.

    Accepts a trailing ``Z``, date-only values (midnight UTC) and epoch
    seconds/milliseconds. Returns None for empty or unparseable input.
    """
    if raw_value is None:
        return None
    value = str(raw_value).strip()
    if not value:
        return None

    # Epoch timestamps (seconds or milliseconds)
    if re.fullmatch(r"\d{10,13}", value):
        ts = int(value)
        if len(value) == 13:
            ts = ts / 1000
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError:
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

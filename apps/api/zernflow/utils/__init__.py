"""Utility modules."""

from zernflow.utils.datetime_parsing import parse_iso_datetime, utcnow
from zernflow.utils.normalization import normalize_text, truncate

__all__ = [
    "normalize_text",
    "parse_iso_datetime",
    "truncate",
    "utcnow",
]

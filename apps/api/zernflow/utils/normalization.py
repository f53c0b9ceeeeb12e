"""Normalization helpers for inbound text."""


def normalize_text(text: str | None) -> str:
    """Lowercase and trim text for keyword comparisons."""
    if not text:
        return ""
    return text.strip().lower()


def truncate(text: str | None, length: int) -> str:
    if not text:
        return ""
    return text[:length]

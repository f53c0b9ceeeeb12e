"""Signature helpers for inbound and outbound webhooks and the cron secret."""

import hashlib
import hmac


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """
    Verify a hex HMAC-SHA256 signature over the raw request body.

    Comparison is constant-time. A missing signature never verifies.
    """
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(signature.strip().lower(), expected)


def verify_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for shared secrets."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())

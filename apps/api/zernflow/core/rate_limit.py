"""Rate limiting configuration for the public webhook surface."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from zernflow.core.config import settings

logger = logging.getLogger(__name__)

# Redis-backed limits for multi-instance deployments, in-memory in dev/test
REDIS_URL = os.getenv("REDIS_URL", "")
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)
WEBHOOK_LIMIT = (
    f"{settings.RATE_LIMIT_WEBHOOK}/minute" if settings.RATE_LIMIT_WEBHOOK > 0 else "1000000/minute"
)


def _build_limiter() -> Limiter:
    if IS_TESTING or not REDIS_URL:
        return Limiter(
            key_func=get_remote_address,
            storage_uri="memory://",
            default_limits=DEFAULT_LIMITS,
            enabled=not IS_TESTING,
        )

    import redis

    try:
        redis.from_url(REDIS_URL, socket_connect_timeout=1).ping()
    except redis.RedisError as exc:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", exc)
        return Limiter(
            key_func=get_remote_address,
            storage_uri="memory://",
            default_limits=DEFAULT_LIMITS,
        )
    return Limiter(
        key_func=get_remote_address,
        storage_uri=REDIS_URL,
        default_limits=DEFAULT_LIMITS,
    )


limiter = _build_limiter()

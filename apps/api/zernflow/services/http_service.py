"""Retrying transport for outbound messaging provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

# The request reached the provider; it may already have been acted on
DELIVERED_REQUEST_ERRORS = (httpx.ReadTimeout, httpx.ReadError, httpx.RemoteProtocolError)


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


def _retry_after(response: httpx.Response, max_delay: float) -> float | None:
    """Seconds the provider asked us to wait, capped; None when absent or not numeric."""
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return min(max_delay, max(0.0, float(value)))
    except ValueError:
        return None


async def request_with_retries(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: frozenset[int] | set[int] = RETRYABLE_STATUSES,
    retry_delivered: bool = True,
) -> httpx.Response:
    """
    Call ``send`` until it yields a non-retryable response or attempts run out.

    Transport errors on the final attempt propagate. A retryable status on the
    final attempt is returned as-is so the caller can turn it into a
    ProviderError with the response body. Rate limits honor Retry-After.

    Pass ``retry_delivered=False`` for non-idempotent calls: errors raised
    after the request went out (read timeouts, dropped connections) then
    propagate at once instead of risking a duplicate send.
    """
    for attempt in range(1, max_attempts + 1):
        last_attempt = attempt == max_attempts
        try:
            response = await send()
        except httpx.RequestError as exc:
            if last_attempt or (not retry_delivered and isinstance(exc, DELIVERED_REQUEST_ERRORS)):
                raise
            logger.warning("Provider request error (attempt %s/%s): %s", attempt, max_attempts, exc)
            delay = _backoff(attempt - 1, base_delay, max_delay)
        else:
            if last_attempt or response.status_code not in retry_statuses:
                return response
            logger.warning(
                "Provider returned %s (attempt %s/%s)", response.status_code, attempt, max_attempts
            )
            delay = _retry_after(response, max_delay)
            if delay is None:
                delay = _backoff(attempt - 1, base_delay, max_delay)
        if delay:
            await asyncio.sleep(delay)
    raise RuntimeError("max_attempts must be at least 1")

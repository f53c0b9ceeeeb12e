"""Outbound webhooks: notify subscriber endpoints about workspace events.

``dispatch_event`` only records the event: when at least one active
endpoint subscribes to it, a ``deliver_webhook`` job is enqueued and the
caller moves on. The jobs tick then delivers to every endpoint in parallel
with a bounded timeout; consecutive failures are counted per endpoint and
the endpoint is switched off once the ceiling is reached.
"""

from __future__ import annotations

import asyncio
import json
import logging
from uuid import UUID

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.constants import OUTBOUND_SIGNATURE_HEADER, OUTBOUND_USER_AGENT
from zernflow.core.security import compute_signature
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import JobType, WebhookEventType
from zernflow.db.models import ScheduledJob, WebhookEndpoint
from zernflow.jobs.utils import safe_url
from zernflow.services import job_service
from zernflow.utils import utcnow

logger = logging.getLogger(__name__)


def build_payload(event: WebhookEventType, data: dict, timestamp: str | None = None) -> bytes:
    """Serialize ``{event, timestamp, data}``; the signature covers these exact bytes."""
    payload = {
        "event": event.value,
        "timestamp": timestamp or utcnow().isoformat(),
        "data": data,
    }
    return json.dumps(payload, default=str, separators=(",", ":")).encode()


def build_headers(body: bytes, secret: str | None) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": OUTBOUND_USER_AGENT,
    }
    if secret:
        headers[OUTBOUND_SIGNATURE_HEADER] = compute_signature(secret, body)
    return headers


def get_subscribed_endpoints(
    db: Session, workspace_id: UUID, event: WebhookEventType
) -> list[WebhookEndpoint]:
    endpoints = (
        db.query(WebhookEndpoint)
        .filter(
            WebhookEndpoint.workspace_id == workspace_id,
            WebhookEndpoint.is_active.is_(True),
        )
        .all()
    )
    return [endpoint for endpoint in endpoints if event.value in (endpoint.events or [])]


async def _deliver(client: httpx.AsyncClient, url: str, body: bytes, headers: dict) -> bool:
    try:
        response = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("Webhook delivery failed for %s (%s)", safe_url(url), type(exc).__name__)
        return False
    if response.is_success:
        return True
    logger.warning("Webhook delivery to %s returned %s", safe_url(url), response.status_code)
    return False


def record_success(db: Session, endpoint_id: UUID) -> None:
    db.execute(
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == endpoint_id)
        .values(failure_count=0, last_triggered_at=utcnow())
        .execution_options(synchronize_session=False)
    )


def record_failure(db: Session, endpoint_id: UUID) -> bool:
    """Increment the failure counter atomically; returns True when the endpoint got disabled."""
    db.execute(
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == endpoint_id)
        .values(failure_count=WebhookEndpoint.failure_count + 1)
        .execution_options(synchronize_session=False)
    )
    disabled = db.execute(
        update(WebhookEndpoint)
        .where(
            WebhookEndpoint.id == endpoint_id,
            WebhookEndpoint.is_active.is_(True),
            WebhookEndpoint.failure_count >= settings.OUTBOUND_WEBHOOK_MAX_FAILURES,
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    ).rowcount
    return bool(disabled)


def dispatch_event(
    db: Session,
    workspace_id: UUID,
    event: WebhookEventType,
    data: dict,
) -> ScheduledJob | None:
    """
    Queue ``event`` for the endpoints subscribed to it right now.

    Never raises: a database error is logged and the session rolled back,
    so callers commit their own work first. Returns the delivery job, or
    None when nobody listens.
    """
    try:
        endpoints = get_subscribed_endpoints(db, workspace_id, event)
        if not endpoints:
            return None
        return job_service.schedule_job(
            db,
            JobType.DELIVER_WEBHOOK,
            {
                "workspaceId": str(workspace_id),
                "event": event.value,
                "timestamp": utcnow().isoformat(),
                "data": data,
                "endpointIds": [str(endpoint.id) for endpoint in endpoints],
            },
            workspace_id=workspace_id,
        )
    except SQLAlchemyError:
        logger.exception(
            "Could not queue webhook event %s",
            event.value,
            extra=build_log_context(workspace_id=str(workspace_id)),
        )
        db.rollback()
        return None


async def deliver_event(
    db: Session,
    workspace_id: UUID,
    event: WebhookEventType,
    data: dict,
    *,
    timestamp: str | None = None,
    endpoint_ids: list[UUID] | None = None,
) -> dict[str, int]:
    """
    POST one event to its endpoints in parallel and book the outcomes.

    ``endpoint_ids`` narrows delivery to the endpoints subscribed when the
    event happened; endpoints disabled since then are skipped. A failed
    endpoint never affects the others.
    """
    endpoints = get_subscribed_endpoints(db, workspace_id, event)
    if endpoint_ids is not None:
        wanted = set(endpoint_ids)
        endpoints = [endpoint for endpoint in endpoints if endpoint.id in wanted]
    if not endpoints:
        return {"delivered": 0, "failed": 0}

    body = build_payload(event, data, timestamp)
    async with httpx.AsyncClient(timeout=settings.OUTBOUND_WEBHOOK_TIMEOUT_SECONDS) as client:
        results = await asyncio.gather(
            *[
                _deliver(client, endpoint.url, body, build_headers(body, endpoint.secret))
                for endpoint in endpoints
            ]
        )

    for endpoint, delivered in zip(endpoints, results):
        if delivered:
            record_success(db, endpoint.id)
        elif record_failure(db, endpoint.id):
            logger.warning(
                "Webhook endpoint %s disabled after %s consecutive failures",
                endpoint.id,
                settings.OUTBOUND_WEBHOOK_MAX_FAILURES,
                extra=build_log_context(workspace_id=str(workspace_id)),
            )
    db.commit()
    for endpoint in endpoints:
        db.expire(endpoint)

    delivered = sum(1 for ok in results if ok)
    return {"delivered": delivered, "failed": len(results) - delivered}

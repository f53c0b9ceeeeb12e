"""Outbound webhook job handlers."""

from __future__ import annotations

import logging
from uuid import UUID

from zernflow.db.enums import WebhookEventType
from zernflow.jobs.utils import payload_uuid
from zernflow.services import webhook_dispatcher

logger = logging.getLogger(__name__)


async def process_deliver_webhook(db, job) -> None:
    """
    Deliver one queued workspace event to its subscriber endpoints.

    Endpoint failures are booked on the endpoints themselves rather than
    retried here, so a retry never re-posts to endpoints that already
    accepted the event.
    """
    payload = job.payload or {}
    workspace_id = payload_uuid(payload, "workspaceId")
    event = WebhookEventType(payload.get("event"))

    result = await webhook_dispatcher.deliver_event(
        db,
        workspace_id,
        event,
        payload.get("data") or {},
        timestamp=payload.get("timestamp"),
        endpoint_ids=[UUID(value) for value in payload.get("endpointIds") or []],
    )
    logger.info("Webhook job %s for %s: %s", job.id, event.value, result)

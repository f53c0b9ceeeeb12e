"""Broadcast job handlers."""

from __future__ import annotations

import logging

from zernflow.jobs.utils import payload_uuid
from zernflow.services import broadcast_service

logger = logging.getLogger(__name__)


async def process_send_broadcast(db, job) -> None:
    """Deliver one broadcast recipient. Database errors propagate so the job retries."""
    payload = job.payload or {}
    broadcast_id = payload_uuid(payload, "broadcastId")
    recipient_id = payload_uuid(payload, "recipientId")

    delivered = await broadcast_service.deliver_recipient(db, broadcast_id, recipient_id)
    if not delivered:
        logger.info("Broadcast job %s skipped: recipient %s already resolved", job.id, recipient_id)

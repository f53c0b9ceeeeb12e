"""Messaging provider (Late) inbound webhook handler."""

from __future__ import annotations

import json
import logging

from fastapi import HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.constants import INBOUND_SIGNATURE_HEADER, MESSAGE_RECEIVED_EVENT
from zernflow.core.security import verify_signature
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import MessageDirection
from zernflow.db.models import Channel
from zernflow.schemas.webhook import InboundWebhookPayload
from zernflow.services import ingestion_service

logger = logging.getLogger(__name__)


def _skipped(reason: str) -> dict:
    return {"ok": True, "skipped": True, "reason": reason}


class LateWebhookHandler:
    provider = "late"

    async def handle(self, request: Request, db: Session) -> dict:
        """
        Receive an inbound message from the messaging provider.

        Security:
        - Validates payload size
        - Routes by account id to an active channel
        - Validates the HMAC-SHA256 signature when the channel has a secret,
          before any event is acknowledged or skipped

        Processing:
        - Runs the ingestion pipeline inline (duplicate check first)
        """
        # 1. Check payload size
        content_length = request.headers.get("content-length", "0")
        try:
            if int(content_length) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

        # 2. Get raw body for signature verification
        body = await request.body()
        # Fallback size check in case Content-Length is missing/incorrect
        if len(body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")

        # 3. Parse payload
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON")
        try:
            payload = InboundWebhookPayload.model_validate(data)
        except ValidationError:
            raise HTTPException(400, "Invalid payload")

        # 4. Route to the channel
        if payload.account is None:
            raise HTTPException(400, "Missing account")
        channel = (
            db.query(Channel)
            .filter(Channel.late_account_id == payload.account.id, Channel.is_active.is_(True))
            .first()
        )
        if not channel:
            logger.info("Inbound webhook for unknown account %s", payload.account.id)
            raise HTTPException(404, "Channel not found")

        # 5. Validate signature
        if channel.webhook_secret:
            signature = request.headers.get(INBOUND_SIGNATURE_HEADER)
            if not signature:
                logger.warning(
                    "Inbound webhook missing signature",
                    extra=build_log_context(channel_id=str(channel.id), route="webhooks/late"),
                )
                raise HTTPException(401, "Missing signature")
            if not verify_signature(channel.webhook_secret, body, signature):
                logger.warning(
                    "Inbound webhook invalid signature",
                    extra=build_log_context(channel_id=str(channel.id), route="webhooks/late"),
                )
                raise HTTPException(401, "Invalid signature")

        # 6. Ignore what we do not act on
        if payload.event != MESSAGE_RECEIVED_EVENT:
            return _skipped(f"Event {payload.event} not handled")
        if payload.message is None:
            raise HTTPException(400, "Missing message")
        if payload.message.direction != MessageDirection.INBOUND.value:
            return _skipped("outbound_message")

        # 7. Ingest
        result = await ingestion_service.process_inbound(db, channel, payload)
        return result.model_dump(exclude_none=True)

"""Broadcast service - recipient fan-out, spaced delivery jobs and counters."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import (
    BroadcastRecipientStatus,
    BroadcastStatus,
    JobType,
    MessageDirection,
    MessageStatus,
)
from zernflow.db.models import (
    Broadcast,
    BroadcastRecipient,
    Channel,
    Conversation,
    Message,
    Workspace,
)
from zernflow.services import job_service, messaging_provider, segment_service
from zernflow.services.messaging_provider import OutboundMessage, ProviderError
from zernflow.utils import utcnow

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (BroadcastStatus.DRAFT.value, BroadcastStatus.SCHEDULED.value)


def broadcast_text(broadcast: Broadcast) -> str:
    return ((broadcast.message_content or {}).get("text") or "").strip()


def create_recipients(
    db: Session, broadcast: Broadcast, recipients: list[tuple[UUID, UUID]]
) -> list[UUID]:
    """Insert recipient rows in bounded batches; returns their ids in order."""
    recipient_ids: list[UUID] = []
    batch_size = settings.BROADCAST_RECIPIENT_INSERT_BATCH
    for start in range(0, len(recipients), batch_size):
        rows = [
            BroadcastRecipient(
                broadcast_id=broadcast.id,
                contact_id=contact_id,
                channel_id=channel_id,
                status=BroadcastRecipientStatus.PENDING.value,
            )
            for contact_id, channel_id in recipients[start : start + batch_size]
        ]
        db.add_all(rows)
        db.flush()
        recipient_ids.extend(row.id for row in rows)
    return recipient_ids


def schedule_delivery(db: Session, broadcast: Broadcast, recipient_ids: list[UUID]) -> None:
    """
    Enqueue one ``send_broadcast`` job per recipient.

    Job ``i`` runs at ``now + i * BROADCAST_SPACING_MS`` so sends are spread
    out rather than burst. The broadcast moves to ``sending``.
    """
    now = utcnow()
    spacing = timedelta(milliseconds=settings.BROADCAST_SPACING_MS)
    batch_size = settings.BROADCAST_JOB_INSERT_BATCH
    for start in range(0, len(recipient_ids), batch_size):
        jobs = [
            job_service.build_job(
                JobType.SEND_BROADCAST,
                {"broadcastId": str(broadcast.id), "recipientId": str(recipient_id)},
                run_at=now + spacing * index,
                workspace_id=broadcast.workspace_id,
            )
            for index, recipient_id in enumerate(
                recipient_ids[start : start + batch_size], start=start
            )
        ]
        db.add_all(jobs)
        db.flush()

    broadcast.status = BroadcastStatus.SENDING.value
    broadcast.total_recipients = len(recipient_ids)
    broadcast.started_at = now
    db.commit()


def start_broadcast(db: Session, broadcast: Broadcast) -> int | None:
    """
    Claim a draft or scheduled broadcast, resolve its audience and schedule delivery.

    Returns the recipient count, or None when another caller already started
    it. An empty message cancels the broadcast; an empty audience completes
    it with zero recipients. Neither is an error.
    """
    if not claim_broadcast(db, broadcast):
        logger.info("Broadcast %s already started elsewhere", broadcast.id)
        return None

    if not broadcast_text(broadcast):
        logger.warning("Broadcast %s has no message text; cancelling", broadcast.id)
        broadcast.status = BroadcastStatus.CANCELLED.value
        db.commit()
        return 0

    recipients = segment_service.resolve_recipients(
        db, broadcast.workspace_id, broadcast.segment_filter, broadcast.channel_id
    )
    if not recipients:
        logger.info("Broadcast %s matched no reachable contacts", broadcast.id)
        broadcast.status = BroadcastStatus.COMPLETED.value
        broadcast.total_recipients = 0
        broadcast.completed_at = utcnow()
        db.commit()
        return 0

    recipient_ids = create_recipients(db, broadcast, recipients)
    schedule_delivery(db, broadcast, recipient_ids)
    return len(recipient_ids)


def claim_broadcast(db: Session, broadcast: Broadcast) -> bool:
    """draft/scheduled -> sending with a conditional update; False if someone else won."""
    result = db.execute(
        update(Broadcast)
        .where(
            Broadcast.id == broadcast.id,
            Broadcast.status.in_(CLAIMABLE_STATUSES),
        )
        .values(status=BroadcastStatus.SENDING.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return False
    db.refresh(broadcast)
    return True


def get_due_broadcasts(db: Session, limit: int) -> list[Broadcast]:
    return (
        db.query(Broadcast)
        .filter(
            Broadcast.status == BroadcastStatus.SCHEDULED.value,
            Broadcast.scheduled_for <= utcnow(),
        )
        .order_by(Broadcast.scheduled_for)
        .limit(limit)
        .all()
    )


def promote_scheduled_broadcasts(db: Session, limit: int | None = None) -> dict[str, int]:
    """
    Start every due scheduled broadcast.

    A broadcast that errors mid-way is reverted to ``scheduled`` so the next
    tick retries it.
    """
    broadcasts = get_due_broadcasts(db, limit or settings.BROADCAST_BATCH_SIZE)
    processed = 0
    failed = 0
    for broadcast in broadcasts:
        try:
            if start_broadcast(db, broadcast) is None:
                continue
            processed += 1
        except Exception:
            db.rollback()
            failed += 1
            logger.exception(
                "Failed to start broadcast %s",
                broadcast.id,
                extra=build_log_context(workspace_id=str(broadcast.workspace_id)),
            )
            db.execute(
                update(Broadcast)
                .where(Broadcast.id == broadcast.id)
                .values(status=BroadcastStatus.SCHEDULED.value)
                .execution_options(synchronize_session=False)
            )
            db.commit()
    return {"processed": processed, "failed": failed, "total": len(broadcasts)}


def _increment(db: Session, broadcast_id: UUID, sent: bool) -> None:
    counter = Broadcast.sent if sent else Broadcast.failed
    db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast_id)
        .values({counter.key: counter + 1})
        .execution_options(synchronize_session=False)
    )


def finalize_if_done(db: Session, broadcast_id: UUID) -> bool:
    """
    Close the broadcast once every recipient is resolved.

    Single conditional update: ``completed`` if anything was sent, else ``failed``.
    """
    result = db.execute(
        update(Broadcast)
        .where(
            Broadcast.id == broadcast_id,
            Broadcast.status == BroadcastStatus.SENDING.value,
            Broadcast.sent + Broadcast.failed >= Broadcast.total_recipients,
        )
        .values(
            status=case(
                (Broadcast.sent > 0, BroadcastStatus.COMPLETED.value),
                else_=BroadcastStatus.FAILED.value,
            ),
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def _resolve_recipient(
    db: Session,
    recipient: BroadcastRecipient,
    sent: bool,
    error: str | None = None,
) -> None:
    if sent:
        recipient.status = BroadcastRecipientStatus.SENT.value
        recipient.sent_at = utcnow()
    else:
        recipient.status = BroadcastRecipientStatus.FAILED.value
        recipient.error_message = (error or "")[:500]
    db.flush()
    _increment(db, recipient.broadcast_id, sent)
    finalize_if_done(db, recipient.broadcast_id)
    db.commit()


async def deliver_recipient(db: Session, broadcast_id: UUID, recipient_id: UUID) -> bool:
    """
    Send the broadcast to one recipient.

    Returns False when there was nothing to do (recipient gone or already
    resolved). Missing credentials or conversation fail the recipient
    without a retry; database errors propagate so the job is retried.
    """
    recipient = db.get(BroadcastRecipient, recipient_id)
    if recipient is None or recipient.status != BroadcastRecipientStatus.PENDING.value:
        return False
    broadcast = db.get(Broadcast, broadcast_id)
    if broadcast is None:
        return False
    if broadcast.status == BroadcastStatus.CANCELLED.value:
        return False

    workspace = db.get(Workspace, broadcast.workspace_id)
    provider = messaging_provider.get_provider(workspace)
    if provider is None:
        _resolve_recipient(db, recipient, sent=False, error="No messaging provider key configured")
        return True

    channel = db.get(Channel, recipient.channel_id)
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == recipient.contact_id,
            Conversation.channel_id == recipient.channel_id,
        )
        .first()
    )
    if channel is None or conversation is None or not conversation.late_conversation_id:
        _resolve_recipient(db, recipient, sent=False, error="No conversation for recipient")
        return True

    text = broadcast_text(broadcast)
    message = Message(
        conversation_id=conversation.id,
        direction=MessageDirection.OUTBOUND.value,
        text=text,
    )
    try:
        message.platform_message_id = await provider.send_message(
            channel.late_account_id, conversation.late_conversation_id, OutboundMessage(text=text)
        )
    except ProviderError as exc:
        logger.warning(
            "Broadcast delivery failed for recipient %s: %s",
            recipient.id,
            exc,
            extra=build_log_context(workspace_id=str(broadcast.workspace_id)),
        )
        message.status = MessageStatus.FAILED.value
        message.error_message = str(exc)[:500]
        db.add(message)
        _resolve_recipient(db, recipient, sent=False, error=str(exc))
        return True

    message.status = MessageStatus.SENT.value
    db.add(message)
    _resolve_recipient(db, recipient, sent=True)
    return True

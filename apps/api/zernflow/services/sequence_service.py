"""Drip sequences: enrollment and the periodic step processor."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import EnrollmentStatus, MessageDirection, MessageStatus, SequenceStatus
from zernflow.db.models import (
    Channel,
    Conversation,
    Message,
    Sequence,
    SequenceEnrollment,
    Workspace,
)
from zernflow.schemas.sequence import SequenceStep, parse_steps
from zernflow.services import messaging_provider
from zernflow.services.messaging_provider import OutboundMessage, ProviderError
from zernflow.utils import utcnow

logger = logging.getLogger(__name__)


def _step_due_at(step: SequenceStep, now: datetime) -> datetime:
    if step.type == "delay" and step.delay_minutes:
        return now + timedelta(minutes=step.delay_minutes)
    return now


def enroll_contact(
    db: Session,
    sequence_id: UUID,
    contact_id: UUID,
    channel_id: UUID,
    commit: bool = True,
) -> SequenceEnrollment:
    """
    Enroll a contact in an active sequence.

    Raises ValueError when the sequence is missing, inactive or empty, or the
    contact already has an active enrollment in it.
    """
    sequence = db.query(Sequence).filter(Sequence.id == sequence_id).first()
    if not sequence:
        raise ValueError("Sequence not found")
    if sequence.status != SequenceStatus.ACTIVE.value:
        raise ValueError("Sequence is not active")
    steps = parse_steps(sequence.steps)
    if not steps:
        raise ValueError("Sequence has no steps")

    existing = (
        db.query(SequenceEnrollment)
        .filter(
            SequenceEnrollment.sequence_id == sequence_id,
            SequenceEnrollment.contact_id == contact_id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .first()
    )
    if existing:
        raise ValueError("Contact is already enrolled in this sequence")

    now = utcnow()
    enrollment = SequenceEnrollment(
        sequence_id=sequence_id,
        contact_id=contact_id,
        channel_id=channel_id,
        current_step_index=0,
        next_step_at=_step_due_at(steps[0], now),
        status=EnrollmentStatus.ACTIVE.value,
        enrolled_at=now,
    )
    db.add(enrollment)
    if commit:
        db.commit()
    else:
        db.flush()
    return enrollment


def cancel_contact_enrollments(db: Session, contact_id: UUID) -> int:
    """Cancel every active enrollment of a contact (opt-out)."""
    return (
        db.query(SequenceEnrollment)
        .filter(
            SequenceEnrollment.contact_id == contact_id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .update({"status": EnrollmentStatus.CANCELLED.value}, synchronize_session="fetch")
    )


def get_due_enrollments(db: Session, limit: int) -> list[SequenceEnrollment]:
    return (
        db.query(SequenceEnrollment)
        .filter(
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
            SequenceEnrollment.next_step_at <= utcnow(),
        )
        .order_by(SequenceEnrollment.next_step_at)
        .limit(limit)
        .all()
    )


async def send_sequence_message(
    db: Session, sequence: Sequence, enrollment: SequenceEnrollment, text: str
) -> None:
    """
    Send one message step and record the outbound message.

    A delivery failure is recorded as a failed message; it never stops the
    enrollment from advancing.
    """
    workspace = db.get(Workspace, sequence.workspace_id)
    provider = messaging_provider.get_provider(workspace)
    if provider is None:
        logger.error(
            "No messaging provider key for workspace",
            extra=build_log_context(workspace_id=str(sequence.workspace_id)),
        )
        return

    channel = db.get(Channel, enrollment.channel_id)
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == enrollment.contact_id,
            Conversation.channel_id == enrollment.channel_id,
        )
        .first()
    )
    if not channel or not conversation or not conversation.late_conversation_id:
        logger.error(
            "No conversation for sequence enrollment %s",
            enrollment.id,
            extra=build_log_context(channel_id=str(enrollment.channel_id)),
        )
        return

    message = Message(
        conversation_id=conversation.id,
        direction=MessageDirection.OUTBOUND.value,
        text=text,
        sent_by_sequence_id=sequence.id,
    )
    try:
        message.platform_message_id = await provider.send_message(
            channel.late_account_id,
            conversation.late_conversation_id,
            OutboundMessage(text=text),
        )
        message.status = MessageStatus.SENT.value
    except ProviderError as exc:
        logger.warning("Sequence message failed for enrollment %s: %s", enrollment.id, exc)
        message.status = MessageStatus.FAILED.value
        message.error_message = str(exc)[:500]
    db.add(message)


async def process_enrollment(db: Session, enrollment: SequenceEnrollment) -> None:
    sequence = db.get(Sequence, enrollment.sequence_id)
    if not sequence or sequence.status != SequenceStatus.ACTIVE.value:
        enrollment.status = EnrollmentStatus.CANCELLED.value
        db.commit()
        return

    steps = parse_steps(sequence.steps)
    index = enrollment.current_step_index
    if index >= len(steps):
        enrollment.status = EnrollmentStatus.COMPLETED.value
        enrollment.completed_at = utcnow()
        enrollment.next_step_at = None
        db.commit()
        return

    step = steps[index]
    if step.type == "message":
        await send_sequence_message(db, sequence, enrollment, step.content or "")
    # A delay step has already been waited out via next_step_at

    now = utcnow()
    next_index = index + 1
    enrollment.current_step_index = next_index
    if next_index >= len(steps):
        enrollment.status = EnrollmentStatus.COMPLETED.value
        enrollment.completed_at = now
        enrollment.next_step_at = None
    else:
        enrollment.next_step_at = _step_due_at(steps[next_index], now)
    db.commit()


async def process_due_enrollments(db: Session, limit: int | None = None) -> dict[str, int]:
    """
    Advance every due active enrollment by one step.

    Returns ``{processed, failed, total}``. One enrollment's error never
    aborts the batch.
    """
    enrollments = get_due_enrollments(db, limit or settings.SEQUENCE_BATCH_SIZE)
    processed = 0
    failed = 0
    for enrollment in enrollments:
        try:
            await process_enrollment(db, enrollment)
            processed += 1
        except Exception:
            db.rollback()
            failed += 1
            logger.exception("Failed to process sequence enrollment %s", enrollment.id)
    return {"processed": processed, "failed": failed, "total": len(enrollments)}

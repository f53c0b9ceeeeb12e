"""Tests for drip sequence enrollment and step processing."""

import uuid
from datetime import timedelta

import pytest

from zernflow.db.enums import EnrollmentStatus, MessageDirection, SequenceStatus
from zernflow.db.models import Message, Sequence
from zernflow.services import sequence_service
from zernflow.utils import utcnow


@pytest.fixture
async def contact_id(ingest, provider) -> uuid.UUID:
    result = await ingest(message_id="m0", text="hi")
    return uuid.UUID(result.contact_id)


def _sequence(db, workspace, steps, status=SequenceStatus.ACTIVE.value) -> Sequence:
    sequence = Sequence(workspace_id=workspace.id, name="Onboarding", status=status, steps=steps)
    db.add(sequence)
    db.commit()
    return sequence


DRIP = [
    {"type": "message", "content": "Welcome aboard"},
    {"type": "delay", "delayMinutes": 60},
    {"type": "message", "content": "Day two tips"},
]


@pytest.mark.asyncio
async def test_message_delay_message_progression(db, workspace, channel, contact_id, provider):
    sequence = _sequence(db, workspace, DRIP)
    enrollment = sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)
    assert enrollment.next_step_at <= utcnow()

    first = await sequence_service.process_due_enrollments(db)
    assert first == {"processed": 1, "failed": 0, "total": 1}
    assert provider.sent_texts == ["Welcome aboard"]
    assert enrollment.current_step_index == 1
    assert enrollment.next_step_at > utcnow() + timedelta(minutes=59)

    # Delay not yet elapsed
    idle = await sequence_service.process_due_enrollments(db)
    assert idle["total"] == 0

    enrollment.next_step_at = utcnow() - timedelta(seconds=1)
    db.commit()
    await sequence_service.process_due_enrollments(db)
    assert enrollment.current_step_index == 2
    assert provider.sent_texts == ["Welcome aboard"]

    await sequence_service.process_due_enrollments(db)
    assert provider.sent_texts == ["Welcome aboard", "Day two tips"]
    assert enrollment.status == EnrollmentStatus.COMPLETED.value
    assert enrollment.completed_at is not None
    assert enrollment.next_step_at is None

    outbound = (
        db.query(Message)
        .filter(Message.direction == MessageDirection.OUTBOUND.value)
        .order_by(Message.created_at)
        .all()
    )
    assert [m.sent_by_sequence_id for m in outbound] == [sequence.id, sequence.id]


@pytest.mark.asyncio
async def test_double_enrollment_is_rejected(db, workspace, channel, contact_id):
    sequence = _sequence(db, workspace, DRIP)
    sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)

    with pytest.raises(ValueError, match="already enrolled"):
        sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)


@pytest.mark.asyncio
async def test_inactive_sequence_rejects_enrollment(db, workspace, channel, contact_id):
    sequence = _sequence(db, workspace, DRIP, status=SequenceStatus.DRAFT.value)

    with pytest.raises(ValueError, match="not active"):
        sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)


@pytest.mark.asyncio
async def test_paused_sequence_cancels_due_enrollment(db, workspace, channel, contact_id, provider):
    sequence = _sequence(db, workspace, DRIP)
    enrollment = sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)
    sequence.status = SequenceStatus.PAUSED.value
    db.commit()

    await sequence_service.process_due_enrollments(db)

    assert enrollment.status == EnrollmentStatus.CANCELLED.value
    assert provider.sent == []


@pytest.mark.asyncio
async def test_failed_send_still_advances(db, workspace, channel, contact_id, provider):
    provider.fail_sends = True
    sequence = _sequence(db, workspace, DRIP)
    enrollment = sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)

    result = await sequence_service.process_due_enrollments(db)

    assert result["processed"] == 1
    assert enrollment.current_step_index == 1
    failed = db.query(Message).filter(Message.direction == MessageDirection.OUTBOUND.value).one()
    assert failed.status == "failed"

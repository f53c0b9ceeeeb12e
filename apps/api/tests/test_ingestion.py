"""Tests for the inbound message pipeline."""

import uuid

import pytest

from zernflow.db.enums import (
    AnalyticsEventType,
    AutoAssignMode,
    EnrollmentStatus,
    FlowSessionStatus,
    MessageDirection,
    MessageStatus,
    Platform,
    SequenceStatus,
    TriggerType,
)
from zernflow.db.models import (
    Channel,
    Contact,
    ContactChannel,
    Conversation,
    FlowSession,
    Message,
    Sequence,
    SequenceEnrollment,
)


@pytest.mark.asyncio
async def test_redelivered_message_is_stored_once(db, channel, ingest, provider):
    first = await ingest(message_id="msg_dup", text="hello")
    second = await ingest(message_id="msg_dup", text="hello")

    assert first.skipped is False
    assert second.skipped is True
    assert second.reason == "duplicate"
    assert second.message_id == first.message_id

    assert db.query(Message).count() == 1
    assert db.query(Contact).count() == 1
    assert db.query(ContactChannel).count() == 1
    assert db.query(Conversation).count() == 1


@pytest.mark.asyncio
async def test_repeat_sender_reuses_contact_and_conversation(db, channel, ingest, provider):
    first = await ingest(message_id="m1", text="one")
    second = await ingest(message_id="m2", text="two")

    assert first.contact_id == second.contact_id
    assert first.conversation_id == second.conversation_id
    assert db.query(Message).count() == 2

    conversation = db.get(Conversation, uuid.UUID(second.conversation_id))
    db.refresh(conversation)
    assert conversation.unread_count == 2
    assert conversation.last_message_preview == "two"


@pytest.mark.asyncio
async def test_new_contact_takes_names_from_sender(db, channel, ingest, provider):
    result = await ingest(sender_name="Jane Q Doe")

    contact = db.get(Contact, uuid.UUID(result.contact_id))
    assert contact.display_name == "Jane Q Doe"
    assert contact.first_name == "Jane"
    assert contact.last_name == "Q Doe"
    assert contact.is_subscribed is True


@pytest.mark.asyncio
async def test_inbound_message_row_carries_provider_ids(db, channel, ingest, provider):
    result = await ingest(message_id="msg_42", text="hi there")

    message = db.get(Message, uuid.UUID(result.message_id))
    assert message.direction == MessageDirection.INBOUND.value
    assert message.late_message_id == "msg_42"
    assert message.platform_message_id == "ig_msg_42"
    assert message.status == MessageStatus.DELIVERED.value

    conversation = db.get(Conversation, uuid.UUID(result.conversation_id))
    assert conversation.late_conversation_id == "conv_1"


@pytest.mark.asyncio
async def test_message_from_own_connected_account_is_skipped(db, workspace, channel, ingest, provider):
    db.add(
        Channel(
            workspace_id=workspace.id,
            platform=Platform.FACEBOOK.value,
            late_account_id="acc_sister_page",
        )
    )
    db.commit()

    result = await ingest(sender_id="acc_sister_page")

    assert result.skipped is True
    assert result.reason == "self_message"
    assert db.query(Contact).count() == 0


@pytest.mark.asyncio
async def test_keyword_smoke_flow_end_to_end(db, channel, ingest, provider, text_flow, make_trigger):
    from zernflow.services import analytics_service

    flow = text_flow("Smoke test OK, {{first_name}}!")
    make_trigger(flow, TriggerType.KEYWORD.value, {"keywords": ["smoketest"], "matchType": "contains"})

    result = await ingest(text="hey smoketest please")

    assert result.flow_id == str(flow.id)
    assert provider.sent_texts == ["Smoke test OK, Jane!"]
    assert provider.sent[0]["account_id"] == "acc_test"
    assert provider.sent[0]["conversation_id"] == "conv_1"

    outbound = db.query(Message).filter(Message.direction == MessageDirection.OUTBOUND.value).one()
    assert outbound.status == MessageStatus.SENT.value
    assert outbound.sent_by_flow_id == flow.id
    assert outbound.platform_message_id == "pm_1"

    session = db.query(FlowSession).one()
    assert session.status == FlowSessionStatus.COMPLETED.value
    assert analytics_service.count_events(db, channel.workspace_id, AnalyticsEventType.FLOW_STARTED) == 1
    assert analytics_service.count_events(db, channel.workspace_id, AnalyticsEventType.FLOW_COMPLETED) == 1


@pytest.mark.asyncio
async def test_no_matching_trigger_still_stores_message(db, channel, ingest, provider, text_flow, make_trigger):
    flow = text_flow("pricing info")
    make_trigger(flow, TriggerType.KEYWORD.value, {"keywords": ["pricing"]})

    result = await ingest(text="what are your hours")

    assert result.flow_id is None
    assert provider.sent == []
    assert db.query(Message).count() == 1


@pytest.mark.asyncio
async def test_stop_unsubscribes_without_global_keywords(db, workspace, channel, ingest, provider, text_flow, make_trigger):
    assert workspace.global_keywords == []
    flow = text_flow("should not be sent")
    make_trigger(flow, TriggerType.KEYWORD.value, {"keywords": ["stop"]})

    result = await ingest(text="  Stop ")

    contact = db.get(Contact, uuid.UUID(result.contact_id))
    db.refresh(contact)
    assert contact.is_subscribed is False
    assert result.flow_id is None
    assert provider.sent == []


@pytest.mark.asyncio
async def test_start_resubscribes(db, channel, ingest, provider):
    await ingest(message_id="m1", text="stop")
    result = await ingest(message_id="m2", text="START")

    contact = db.get(Contact, uuid.UUID(result.contact_id))
    db.refresh(contact)
    assert contact.is_subscribed is True


@pytest.mark.asyncio
async def test_stop_cancels_enrollments_and_sessions(db, workspace, channel, ingest, provider, make_flow, make_trigger):
    from zernflow.services import sequence_service

    first = await ingest(message_id="m1", text="hi")
    contact_id = uuid.UUID(first.contact_id)

    sequence = Sequence(
        workspace_id=workspace.id,
        name="Drip",
        status=SequenceStatus.ACTIVE.value,
        steps=[{"type": "message", "content": "Welcome"}],
    )
    db.add(sequence)
    db.commit()
    enrollment = sequence_service.enroll_contact(db, sequence.id, contact_id, channel.id)

    waiting_flow = make_flow(
        [
            {"id": "t", "type": "trigger", "data": {}},
            {"id": "w", "type": "smartDelay", "data": {}},
        ],
        [{"source": "t", "target": "w"}],
    )
    make_trigger(waiting_flow, TriggerType.KEYWORD.value, {"keywords": ["quiz"]})
    await ingest(message_id="m2", text="quiz")
    session = db.query(FlowSession).one()
    assert session.waiting_for_input is True

    await ingest(message_id="m3", text="stop")

    db.refresh(enrollment)
    db.refresh(session)
    assert enrollment.status == EnrollmentStatus.CANCELLED.value
    assert session.status == FlowSessionStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_compliance_keyword_applies_during_human_takeover(db, channel, ingest, provider):
    first = await ingest(message_id="m1", text="hi")
    conversation = db.get(Conversation, uuid.UUID(first.conversation_id))
    conversation.is_automation_paused = True
    db.commit()

    result = await ingest(message_id="m2", text="stop")

    contact = db.get(Contact, uuid.UUID(result.contact_id))
    db.refresh(contact)
    assert contact.is_subscribed is False


@pytest.mark.asyncio
async def test_paused_conversation_stores_message_without_automation(db, channel, ingest, provider, text_flow, make_trigger):
    flow = text_flow("automated reply")
    make_trigger(flow, TriggerType.KEYWORD.value, {"keywords": ["help"]})

    first = await ingest(message_id="m1", text="hi")
    conversation = db.get(Conversation, uuid.UUID(first.conversation_id))
    conversation.is_automation_paused = True
    db.commit()

    result = await ingest(message_id="m2", text="help")

    assert result.flow_id is None
    assert provider.sent == []
    assert db.query(Message).count() == 2


@pytest.mark.asyncio
async def test_global_keyword_starts_flow(db, workspace, channel, ingest, provider, text_flow):
    flow = text_flow("Main menu")
    workspace.global_keywords = [{"keyword": "menu", "action": "flow", "flowId": str(flow.id)}]
    db.commit()

    result = await ingest(text="MENU")

    assert result.flow_id == str(flow.id)
    assert provider.sent_texts == ["Main menu"]


@pytest.mark.asyncio
async def test_global_keyword_unsubscribe_action(db, workspace, channel, ingest, provider):
    workspace.global_keywords = [{"keyword": "pause bot", "action": "unsubscribe"}]
    db.commit()

    result = await ingest(text="pause bot")

    contact = db.get(Contact, uuid.UUID(result.contact_id))
    db.refresh(contact)
    assert contact.is_subscribed is False


@pytest.mark.asyncio
async def test_round_robin_assigns_members_in_order(db, workspace, channel, members, ingest, provider):
    workspace.auto_assign_mode = AutoAssignMode.ROUND_ROBIN.value
    db.commit()

    assigned = []
    for i in range(5):
        result = await ingest(message_id=f"m{i}", sender_id=f"user_{i}", conversation_id=f"conv_{i}")
        conversation = db.get(Conversation, uuid.UUID(result.conversation_id))
        assigned.append(conversation.assigned_to)

    expected = [members[i % 3].user_id for i in range(5)]
    assert assigned == expected


@pytest.mark.asyncio
async def test_manual_mode_leaves_conversation_unassigned(db, workspace, channel, members, ingest, provider):
    result = await ingest()

    conversation = db.get(Conversation, uuid.UUID(result.conversation_id))
    assert conversation.assigned_to is None


@pytest.mark.asyncio
async def test_numbered_reply_on_text_only_platform(db, workspace, ingest, provider, make_flow, text_flow, make_trigger):
    twitter = Channel(
        workspace_id=workspace.id,
        platform=Platform.TWITTER.value,
        late_account_id="acc_x",
    )
    db.add(twitter)
    db.commit()

    question = make_flow(
        [
            {"id": "t", "type": "trigger", "data": {}},
            {
                "id": "q",
                "type": "sendMessage",
                "data": {
                    "messages": [
                        {
                            "text": "Interested?",
                            "quickReplies": [
                                {"title": "Yes", "payload": "ANSWER_YES"},
                                {"title": "No", "payload": "ANSWER_NO"},
                            ],
                        }
                    ]
                },
            },
        ],
        [{"source": "t", "target": "q"}],
    )
    make_trigger(question, TriggerType.KEYWORD.value, {"keywords": ["offer"]})
    answer_no = text_flow("Maybe next time")
    make_trigger(answer_no, TriggerType.QUICK_REPLY.value, {"payload": "ANSWER_NO"})

    await ingest(target_channel=twitter, message_id="m1", text="offer")
    result = await ingest(target_channel=twitter, message_id="m2", text="2")

    assert provider.sent_texts == ["Interested?\n\n1. Yes\n2. No", "Maybe next time"]
    assert result.flow_id == str(answer_no.id)

"""
Inbound message ingestion.

Turns one verified ``message.received`` delivery into contact, conversation
and message rows, then decides what automation (if any) runs:

1. duplicate provider message ids and self-loops are skipped
2. compliance keywords (STOP/START family) always win
3. a paused conversation (human takeover) stores the message only
4. a numbered reply on a text-only platform becomes a quick-reply payload
5. a session waiting for input is resumed
6. workspace global keywords
7. trigger matching and a new flow run
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zernflow.core.constants import (
    COMPLIANCE_OPT_IN_KEYWORDS,
    COMPLIANCE_OPT_OUT_KEYWORDS,
    MESSAGE_PREVIEW_LENGTH,
    NUMBERED_OPTIONS_VARIABLE,
)
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import (
    ConversationStatus,
    FlowStatus,
    GlobalKeywordAction,
    MessageDirection,
    MessageStatus,
    WebhookEventType,
)
from zernflow.db.models import (
    Channel,
    Contact,
    ContactChannel,
    Conversation,
    Flow,
    FlowSession,
    Message,
    Workspace,
)
from zernflow.schemas.webhook import IncomingMessage, IngestResult, InboundWebhookPayload
from zernflow.services import (
    assignment_service,
    contact_service,
    flow_engine,
    platform_adapter,
    sequence_service,
    trigger_matcher,
    webhook_dispatcher,
)
from zernflow.services.flow_context import FlowExecutionError
from zernflow.utils import normalize_text, truncate, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Identity
# =============================================================================


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    if not name:
        return None, None
    first, _, last = name.strip().partition(" ")
    return first or None, last.strip() or None


def upsert_contact(
    db: Session,
    channel: Channel,
    sender_id: str,
    name: str | None = None,
    username: str | None = None,
    picture: str | None = None,
) -> tuple[Contact, bool]:
    """
    Resolve the sender to a contact via (channel, platform_sender_id).

    Returns ``(contact, created)``. A concurrent insert of the same sender
    loses on the unique constraint and re-reads the winner.
    """
    now = utcnow()
    link = (
        db.query(ContactChannel)
        .filter(
            ContactChannel.channel_id == channel.id,
            ContactChannel.platform_sender_id == sender_id,
        )
        .first()
    )
    if link:
        contact = db.get(Contact, link.contact_id)
        contact.last_interaction_at = now
        db.flush()
        return contact, False

    first_name, last_name = _split_name(name)
    contact = Contact(
        workspace_id=channel.workspace_id,
        display_name=name or username or sender_id,
        first_name=first_name,
        last_name=last_name,
        avatar_url=picture,
        last_interaction_at=now,
    )
    try:
        with db.begin_nested():
            db.add(contact)
            db.flush()
            db.add(
                ContactChannel(
                    contact_id=contact.id,
                    channel_id=channel.id,
                    platform_sender_id=sender_id,
                    platform_username=username,
                )
            )
    except IntegrityError:
        link = (
            db.query(ContactChannel)
            .filter(
                ContactChannel.channel_id == channel.id,
                ContactChannel.platform_sender_id == sender_id,
            )
            .one()
        )
        return db.get(Contact, link.contact_id), False
    return contact, True


def upsert_conversation(
    db: Session,
    channel: Channel,
    contact: Contact,
    late_conversation_id: str | None,
    preview: str,
) -> tuple[Conversation, bool]:
    """Find or open the (channel, contact) conversation and bump its inbox fields."""
    now = utcnow()
    conversation = (
        db.query(Conversation)
        .filter(Conversation.channel_id == channel.id, Conversation.contact_id == contact.id)
        .first()
    )
    if conversation is None:
        conversation = Conversation(
            workspace_id=channel.workspace_id,
            channel_id=channel.id,
            contact_id=contact.id,
            platform=channel.platform,
            late_conversation_id=late_conversation_id,
            status=ConversationStatus.OPEN.value,
            last_message_at=now,
            last_message_preview=preview,
            unread_count=1,
        )
        try:
            with db.begin_nested():
                db.add(conversation)
        except IntegrityError:
            conversation = (
                db.query(Conversation)
                .filter(
                    Conversation.channel_id == channel.id,
                    Conversation.contact_id == contact.id,
                )
                .one()
            )
        else:
            return conversation, True

    values = {
        "unread_count": Conversation.unread_count + 1,
        "last_message_at": now,
        "last_message_preview": preview,
        "status": ConversationStatus.OPEN.value,
    }
    if late_conversation_id:
        values["late_conversation_id"] = late_conversation_id
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    db.refresh(conversation)
    return conversation, False


def is_self_message(db: Session, channel: Channel, sender_id: str) -> bool:
    """True when the sender is another connected account of the same workspace."""
    return (
        db.query(Channel.id)
        .filter(
            Channel.workspace_id == channel.workspace_id,
            Channel.id != channel.id,
            Channel.late_account_id == sender_id,
        )
        .first()
        is not None
    )


# =============================================================================
# Keywords
# =============================================================================


def apply_compliance_keyword(
    db: Session, workspace_id: UUID, contact: Contact, text: str | None
) -> str | None:
    """
    Handle built-in opt-out/opt-in words. Returns "opt_out", "opt_in" or None.

    Opting out also cancels the contact's sequence enrollments and flow sessions.
    """
    word = normalize_text(text)
    if word in COMPLIANCE_OPT_OUT_KEYWORDS:
        contact_service.set_subscription(db, contact, False)
        sequence_service.cancel_contact_enrollments(db, contact.id)
        flow_engine.cancel_contact_sessions(db, contact.id, "Contact opted out")
        action = "opt_out"
    elif word in COMPLIANCE_OPT_IN_KEYWORDS:
        contact_service.set_subscription(db, contact, True)
        action = "opt_in"
    else:
        return None

    db.commit()
    logger.info("Compliance keyword applied: %s", action, extra=build_log_context(workspace_id=str(workspace_id)))
    webhook_dispatcher.dispatch_event(
        db,
        workspace_id,
        WebhookEventType.CONTACT_UPDATED,
        {"contactId": str(contact.id), "isSubscribed": contact.is_subscribed},
    )
    return action


def match_global_keyword(workspace: Workspace, text: str | None) -> dict | None:
    """First workspace keyword equal to the message (trimmed, case-insensitive)."""
    word = normalize_text(text)
    if not word:
        return None
    for entry in workspace.global_keywords or []:
        if isinstance(entry, dict) and normalize_text(entry.get("keyword")) == word:
            return entry
    return None


# =============================================================================
# Pipeline
# =============================================================================


def _incoming_from_payload(payload: InboundWebhookPayload) -> IncomingMessage:
    message = payload.message
    metadata = payload.metadata
    return IncomingMessage(
        text=message.text or None,
        postback_payload=metadata.postback_payload or None,
        quick_reply_payload=metadata.quick_reply_payload or None,
        callback_data=metadata.callback_data or None,
        sender_id=message.sender.id,
        sender_name=message.sender.name,
        sender_username=message.sender.username,
    )


def map_numbered_reply(
    db: Session, channel: Channel, contact: Contact, incoming: IncomingMessage
) -> None:
    """On text-only platforms, turn "2" into the payload of the second option last offered."""
    if not platform_adapter.is_text_only(channel.platform):
        return
    if incoming.quick_reply_payload or incoming.postback_payload or not incoming.text:
        return
    session = (
        db.query(FlowSession)
        .filter(FlowSession.contact_id == contact.id, FlowSession.channel_id == channel.id)
        .order_by(FlowSession.created_at.desc())
        .first()
    )
    if session is None:
        return
    options = (session.variables or {}).get(NUMBERED_OPTIONS_VARIABLE) or []
    payload = platform_adapter.parse_numbered_response(incoming.text, options)
    if payload:
        incoming.quick_reply_payload = payload


def _get_published_flow(db: Session, workspace_id: UUID, raw_flow_id) -> Flow | None:
    try:
        flow_id = UUID(str(raw_flow_id))
    except ValueError:
        logger.warning("Global keyword references an invalid flow id")
        return None
    return (
        db.query(Flow)
        .filter(
            Flow.id == flow_id,
            Flow.workspace_id == workspace_id,
            Flow.status == FlowStatus.PUBLISHED.value,
        )
        .first()
    )


async def _run_flow(
    db: Session,
    flow: Flow,
    *,
    contact: Contact,
    channel: Channel,
    conversation: Conversation,
    incoming: IncomingMessage,
    trigger_id: UUID | None = None,
) -> bool:
    try:
        await flow_engine.execute_flow(
            db,
            flow,
            contact=contact,
            channel=channel,
            conversation=conversation,
            incoming=incoming,
            trigger_id=trigger_id,
        )
    except FlowExecutionError as exc:
        logger.error(
            "Flow execution error: %s",
            exc,
            extra=build_log_context(workspace_id=str(channel.workspace_id), flow_id=str(flow.id)),
        )
        return False
    return True


async def process_inbound(
    db: Session, channel: Channel, payload: InboundWebhookPayload
) -> IngestResult:
    """Run the ingestion pipeline for one verified inbound message."""
    message = payload.message
    sender = message.sender

    existing = db.query(Message.id).filter(Message.late_message_id == message.id).first()
    if existing:
        return IngestResult(skipped=True, reason="duplicate", message_id=str(existing[0]))

    if is_self_message(db, channel, sender.id):
        logger.info("Skipping message from own connected account", extra=build_log_context(channel_id=str(channel.id)))
        return IngestResult(skipped=True, reason="self_message")

    workspace = db.get(Workspace, channel.workspace_id)
    contact, contact_created = upsert_contact(
        db, channel, sender.id, sender.name, sender.username, sender.picture
    )
    late_conversation_id = message.conversation_id or (payload.conversation.id if payload.conversation else None)
    conversation, conversation_created = upsert_conversation(
        db,
        channel,
        contact,
        late_conversation_id,
        truncate(message.text, MESSAGE_PREVIEW_LENGTH),
    )

    incoming = _incoming_from_payload(payload)
    inbound = Message(
        conversation_id=conversation.id,
        direction=MessageDirection.INBOUND.value,
        text=incoming.text,
        attachments=[a.model_dump(exclude_none=True) for a in message.attachments] or None,
        quick_reply_payload=incoming.quick_reply_payload,
        postback_payload=incoming.postback_payload,
        callback_data=incoming.callback_data,
        late_message_id=message.id,
        platform_message_id=message.platform_message_id,
        status=MessageStatus.DELIVERED.value,
    )
    try:
        with db.begin_nested():
            db.add(inbound)
    except IntegrityError:
        # Concurrent redelivery of the same message
        db.rollback()
        return IngestResult(skipped=True, reason="duplicate")

    if contact_created and conversation_created:
        assignment_service.auto_assign(db, workspace, conversation)
    db.commit()

    result = IngestResult(
        message_id=str(inbound.id),
        contact_id=str(contact.id),
        conversation_id=str(conversation.id),
    )

    if contact_created:
        webhook_dispatcher.dispatch_event(
            db,
            workspace.id,
            WebhookEventType.CONTACT_CREATED,
            {"contactId": str(contact.id), "displayName": contact.display_name, "platform": channel.platform},
        )
    if conversation_created:
        webhook_dispatcher.dispatch_event(
            db,
            workspace.id,
            WebhookEventType.CONVERSATION_OPENED,
            {"conversationId": str(conversation.id), "contactId": str(contact.id)},
        )
    webhook_dispatcher.dispatch_event(
        db,
        workspace.id,
        WebhookEventType.MESSAGE_RECEIVED,
        {
            "messageId": str(inbound.id),
            "conversationId": str(conversation.id),
            "contactId": str(contact.id),
            "platform": channel.platform,
            "text": incoming.text,
        },
    )

    if apply_compliance_keyword(db, workspace.id, contact, incoming.text):
        return result

    if conversation.is_automation_paused:
        return result

    map_numbered_reply(db, channel, contact, incoming)

    waiting = flow_engine.get_waiting_session(db, contact.id, channel.id)
    if waiting is not None:
        try:
            resumed = await flow_engine.resume_session(db, waiting, incoming=incoming)
        except FlowExecutionError as exc:
            logger.error("Flow resume error: %s", exc, extra=build_log_context(channel_id=str(channel.id)))
            resumed = True
        if resumed:
            result.flow_id = str(waiting.flow_id)
            return result

    keyword = match_global_keyword(workspace, incoming.text)
    if keyword is not None:
        action = keyword.get("action")
        if action in (GlobalKeywordAction.SUBSCRIBE.value, GlobalKeywordAction.UNSUBSCRIBE.value):
            subscribed = action == GlobalKeywordAction.SUBSCRIBE.value
            if contact_service.set_subscription(db, contact, subscribed):
                db.commit()
                webhook_dispatcher.dispatch_event(
                    db,
                    workspace.id,
                    WebhookEventType.CONTACT_UPDATED,
                    {"contactId": str(contact.id), "isSubscribed": subscribed},
                )
            return result
        if action == GlobalKeywordAction.FLOW.value and keyword.get("flowId"):
            flow = _get_published_flow(db, workspace.id, keyword["flowId"])
            if flow is not None:
                if await _run_flow(
                    db, flow, contact=contact, channel=channel, conversation=conversation, incoming=incoming
                ):
                    result.flow_id = str(flow.id)
                return result

    trigger = await trigger_matcher.match_trigger(db, channel.id, conversation.id, incoming)
    if trigger is None:
        return result

    if await _run_flow(
        db,
        trigger.flow,
        contact=contact,
        channel=channel,
        conversation=conversation,
        incoming=incoming,
        trigger_id=trigger.id,
    ):
        result.flow_id = str(trigger.flow_id)
    return result

"""Outbound webhook event enums."""

from enum import Enum


class WebhookEventType(str, Enum):
    """Events external subscribers can receive."""

    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    FLOW_STARTED = "flow.started"
    FLOW_COMPLETED = "flow.completed"
    TAG_ADDED = "tag.added"
    TAG_REMOVED = "tag.removed"
    CONVERSATION_OPENED = "conversation.opened"
    CONVERSATION_CLOSED = "conversation.closed"

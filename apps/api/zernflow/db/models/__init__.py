"""SQLAlchemy ORM models."""

from zernflow.db.models.broadcasts import Broadcast, BroadcastRecipient
from zernflow.db.models.channels import Channel
from zernflow.db.models.contacts import (
    Contact,
    ContactChannel,
    ContactCustomField,
    ContactTag,
    CustomFieldDefinition,
    Tag,
)
from zernflow.db.models.conversations import Conversation, Message
from zernflow.db.models.flows import AnalyticsEvent, CommentLog, Flow, FlowSession, Trigger
from zernflow.db.models.jobs import ScheduledJob
from zernflow.db.models.sequences import Sequence, SequenceEnrollment
from zernflow.db.models.webhooks import WebhookEndpoint
from zernflow.db.models.workspaces import BotField, Workspace, WorkspaceMember

__all__ = [
    "AnalyticsEvent",
    "BotField",
    "Broadcast",
    "BroadcastRecipient",
    "Channel",
    "CommentLog",
    "Contact",
    "ContactChannel",
    "ContactCustomField",
    "ContactTag",
    "Conversation",
    "CustomFieldDefinition",
    "Flow",
    "FlowSession",
    "Message",
    "ScheduledJob",
    "Sequence",
    "SequenceEnrollment",
    "Tag",
    "Trigger",
    "WebhookEndpoint",
    "Workspace",
    "WorkspaceMember",
]

"""Conversation and message models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from zernflow.db.base import Base
from zernflow.db.enums import ConversationStatus
from zernflow.db.types import JsonType
from zernflow.utils import utcnow


class Conversation(Base):
    """
    The open thread between a contact and a channel.

    ``is_automation_paused`` is the human-takeover flag: while set, inbound
    messages are stored but no flow runs.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("channel_id", "contact_id", name="uq_conversation_channel_contact"),
        Index("idx_conversations_workspace_last", "workspace_id", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    late_conversation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=ConversationStatus.OPEN.value, nullable=False
    )
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    is_automation_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Inbox denormalization
    last_message_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_message_preview: Mapped[str | None] = mapped_column(String(100), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )


class Message(Base):
    """
    Append-only record of one inbound or outbound message.

    Inbound rows carry the provider's message id, which is unique and is
    what makes webhook redelivery a no-op.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("late_message_id", name="uq_messages_late_message_id"),
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound | outbound
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments: Mapped[list | None] = mapped_column(JsonType, nullable=True)

    # Interactive payloads from the provider
    quick_reply_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    postback_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    callback_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    late_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Outbound attribution
    sent_by_flow_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    sent_by_node_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sent_by_sequence_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

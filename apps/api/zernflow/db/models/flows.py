"""Flow graph, trigger, session and analytics models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from zernflow.db.base import Base
from zernflow.db.enums import FlowSessionStatus, FlowStatus
from zernflow.db.types import JsonType
from zernflow.utils import utcnow


class Flow(Base):
    """
    A node/edge graph authored in the visual editor.

    Only ``published`` flows can be started by triggers.
    """

    __tablename__ = "flows"
    __table_args__ = (Index("idx_flows_workspace_status", "workspace_id", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=FlowStatus.DRAFT.value, nullable=False
    )
    nodes: Mapped[list] = mapped_column(JsonType, default=list, nullable=False)
    edges: Mapped[list] = mapped_column(JsonType, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    triggers: Mapped[list["Trigger"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan"
    )


class Trigger(Base):
    """Matching rule bound to a flow; ``channel_id`` NULL means every channel."""

    __tablename__ = "triggers"
    __table_args__ = (Index("idx_triggers_flow", "flow_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    flow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("flows.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    config: Mapped[dict] = mapped_column(JsonType, default=dict, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    flow: Mapped["Flow"] = relationship(back_populates="triggers")


class FlowSession(Base):
    """
    Durable execution cursor for one contact's run through a flow.

    ``current_node_id`` is the node the session stopped on. ``flow_stack``
    holds parent frames for goToFlow with returnAfter.
    """

    __tablename__ = "flow_sessions"
    __table_args__ = (
        Index("idx_flow_sessions_contact_channel", "contact_id", "channel_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    flow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("flows.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=FlowSessionStatus.ACTIVE.value, nullable=False
    )
    current_node_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    variables: Mapped[dict] = mapped_column(JsonType, default=dict, nullable=False)
    flow_stack: Mapped[list] = mapped_column(JsonType, default=list, nullable=False)
    waiting_until: Mapped[datetime | None] = mapped_column(nullable=True)
    waiting_for_input: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # The one resume_flow job allowed to wake this session
    resume_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    human_takeover_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("idx_analytics_workspace_type_created", "workspace_id", "event_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    flow_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JsonType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )


class CommentLog(Base):
    """One processed public comment; the unique key keeps polling idempotent."""

    __tablename__ = "comment_logs"
    __table_args__ = (
        UniqueConstraint("channel_id", "platform_comment_id", name="uq_comment_log"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    platform_comment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    post_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    author_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    author_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    comment_text: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    trigger_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    flow_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

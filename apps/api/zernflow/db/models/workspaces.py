"""Workspace, team membership and bot-wide field models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from zernflow.db.base import Base
from zernflow.db.enums import AutoAssignMode
from zernflow.db.types import EncryptedString, JsonType
from zernflow.utils import utcnow


class Workspace(Base):
    """
    A tenant owning channels, contacts and flows.

    Carries the provider credentials (encrypted at rest), the optional AI key,
    and the round-robin assignment cursor for new conversations.
    """

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Provider credentials
    late_api_key_encrypted: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    ai_api_key_encrypted: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Conversation assignment
    auto_assign_mode: Mapped[str] = mapped_column(
        String(20), default=AutoAssignMode.MANUAL.value, nullable=False
    )
    last_assigned_member_index: Mapped[int] = mapped_column(
        Integer, default=-1, server_default="-1", nullable=False
    )

    # [{keyword, action: subscribe|unsubscribe|flow, flowId?}]
    global_keywords: Mapped[list] = mapped_column(JsonType, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    members: Mapped[list["WorkspaceMember"]] = relationship(
        back_populates="workspace",
        cascade="all, delete-orphan",
        order_by="WorkspaceMember.created_at",
    )


class WorkspaceMember(Base):
    """A team member who can be assigned conversations."""

    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
        Index("idx_workspace_members_ws_created", "workspace_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="member", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    workspace: Mapped["Workspace"] = relationship(back_populates="members")


class BotField(Base):
    """Workspace-wide variable available to every flow as {{name}}."""

    __tablename__ = "bot_fields"
    __table_args__ = (UniqueConstraint("workspace_id", "name", name="uq_bot_field_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)

"""Round-robin assignment of new conversations to workspace members."""

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from zernflow.db.enums import AutoAssignMode
from zernflow.db.models import Conversation, Workspace, WorkspaceMember

logger = logging.getLogger(__name__)


def get_members(db: Session, workspace_id: UUID) -> list[WorkspaceMember]:
    return (
        db.query(WorkspaceMember)
        .filter(WorkspaceMember.workspace_id == workspace_id)
        .order_by(WorkspaceMember.created_at, WorkspaceMember.id)
        .all()
    )


def next_member_index(db: Session, workspace_id: UUID) -> int | None:
    """
    Advance the workspace cursor and return its new value.

    A single ``UPDATE ... SET idx = idx + 1 RETURNING idx`` so two first
    messages arriving together never get the same member.
    """
    return db.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(last_assigned_member_index=Workspace.last_assigned_member_index + 1)
        .returning(Workspace.last_assigned_member_index)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()


def auto_assign(db: Session, workspace: Workspace, conversation: Conversation) -> UUID | None:
    """Assign ``conversation`` to the next member when round-robin is on. Returns the user id."""
    if workspace.auto_assign_mode != AutoAssignMode.ROUND_ROBIN.value:
        return None
    members = get_members(db, workspace.id)
    if not members:
        return None
    index = next_member_index(db, workspace.id)
    if index is None:
        return None
    member = members[index % len(members)]
    conversation.assigned_to = member.user_id
    db.flush()
    logger.info("Conversation %s auto-assigned to member %s", conversation.id, member.id)
    return member.user_id

"""Product analytics events (flow_started, message_sent, ...)."""

import logging
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import AnalyticsEventType
from zernflow.db.models import AnalyticsEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    workspace_id: UUID,
    event_type: AnalyticsEventType,
    *,
    flow_id: UUID | None = None,
    contact_id: UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """
    Insert one analytics event.

    Fire-and-forget: the insert runs in a savepoint and a failure is logged,
    never raised, so flow traversal does not stop on it.
    """
    try:
        with db.begin_nested():
            db.add(
                AnalyticsEvent(
                    workspace_id=workspace_id,
                    flow_id=flow_id,
                    contact_id=contact_id,
                    event_type=event_type.value,
                    event_metadata=metadata or {},
                )
            )
    except SQLAlchemyError:
        logger.warning(
            "Failed to record analytics event %s",
            event_type.value,
            extra=build_log_context(
                workspace_id=str(workspace_id), flow_id=str(flow_id) if flow_id else None
            ),
            exc_info=True,
        )


def count_events(
    db: Session,
    workspace_id: UUID,
    event_type: AnalyticsEventType,
    flow_id: UUID | None = None,
) -> int:
    query = db.query(func.count(AnalyticsEvent.id)).filter(
        AnalyticsEvent.workspace_id == workspace_id,
        AnalyticsEvent.event_type == event_type.value,
    )
    if flow_id:
        query = query.filter(AnalyticsEvent.flow_id == flow_id)
    return query.scalar() or 0

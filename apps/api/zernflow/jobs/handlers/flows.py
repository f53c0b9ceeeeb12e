"""Flow job handlers."""

from __future__ import annotations

import logging

from zernflow.core.structured_logging import build_log_context
from zernflow.db.models import FlowSession
from zernflow.jobs.utils import payload_uuid
from zernflow.services import flow_engine
from zernflow.services.flow_context import FlowExecutionError

logger = logging.getLogger(__name__)


async def process_resume_flow(db, job) -> None:
    """
    Continue a session suspended by a delay or a wait-for-input timeout.

    Payload:
        - sessionId: FlowSession to resume
        - nodeId: node that scheduled the resume
        - reason: "timeout" when a wait-for-input expired
    """
    payload = job.payload or {}
    session_id = payload_uuid(payload, "sessionId")

    session = db.get(FlowSession, session_id)
    if session is None:
        logger.info("Resume job %s: session %s no longer exists", job.id, session_id)
        return

    try:
        resumed = await flow_engine.resume_session(
            db,
            session,
            node_id=payload.get("nodeId"),
            timed_out=payload.get("reason") == "timeout",
            job_id=job.id,
        )
    except FlowExecutionError as exc:
        # The session is already cancelled; retrying cannot help
        logger.error(
            "Resumed flow aborted: %s",
            exc,
            extra=build_log_context(job_id=str(job.id), flow_id=payload.get("flowId")),
        )
        return

    if not resumed:
        logger.info("Resume job %s was a no-op for session %s", job.id, session_id)

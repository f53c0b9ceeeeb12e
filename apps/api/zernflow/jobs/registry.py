"""Maps each JobType to the coroutine that executes it."""

from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy.orm import Session

from zernflow.db.enums import JobType
from zernflow.db.models import ScheduledJob
from zernflow.jobs.handlers import broadcasts, flows, webhooks

JobHandler = Callable[[Session, ScheduledJob], Awaitable[None]]

# Every JobType must have exactly one entry
JOB_HANDLERS: dict[str, JobHandler] = {
    JobType.RESUME_FLOW.value: flows.process_resume_flow,
    JobType.SEND_BROADCAST.value: broadcasts.process_send_broadcast,
    JobType.DELIVER_WEBHOOK.value: webhooks.process_deliver_webhook,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    """Raises ValueError for types with no handler; the tick records it as the job's last_error."""
    try:
        return JOB_HANDLERS[job_type]
    except KeyError:
        raise ValueError(f"Unknown job type: {job_type}") from None

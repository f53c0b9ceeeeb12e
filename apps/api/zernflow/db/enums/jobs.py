"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of scheduled jobs."""

    RESUME_FLOW = "resume_flow"  # Continue a suspended flow session after a delay
    SEND_BROADCAST = "send_broadcast"  # Deliver one broadcast recipient
    DELIVER_WEBHOOK = "deliver_webhook"  # POST one event to subscriber endpoints


class JobStatus(str, Enum):
    """Status of scheduled jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


DEFAULT_JOB_STATUS = JobStatus.PENDING

"""Enum definitions for application constants."""

from zernflow.db.enums.broadcasts import (
    BroadcastRecipientStatus,
    BroadcastStatus,
    EnrollmentStatus,
    SegmentCombinator,
    SegmentField,
    SequenceStatus,
    SequenceStepType,
)
from zernflow.db.enums.flows import (
    AnalyticsEventType,
    FlowSessionStatus,
    FlowStatus,
    KeywordMatchType,
    NodeType,
    TriggerType,
)
from zernflow.db.enums.jobs import DEFAULT_JOB_STATUS, JobStatus, JobType
from zernflow.db.enums.messaging import (
    AutoAssignMode,
    ConversationStatus,
    GlobalKeywordAction,
    MessageDirection,
    MessageStatus,
    Platform,
)
from zernflow.db.enums.webhooks import WebhookEventType

__all__ = [
    "AnalyticsEventType",
    "AutoAssignMode",
    "BroadcastRecipientStatus",
    "BroadcastStatus",
    "ConversationStatus",
    "DEFAULT_JOB_STATUS",
    "EnrollmentStatus",
    "FlowSessionStatus",
    "FlowStatus",
    "GlobalKeywordAction",
    "JobStatus",
    "JobType",
    "KeywordMatchType",
    "MessageDirection",
    "MessageStatus",
    "NodeType",
    "Platform",
    "SegmentCombinator",
    "SegmentField",
    "SequenceStatus",
    "SequenceStepType",
    "TriggerType",
    "WebhookEventType",
]

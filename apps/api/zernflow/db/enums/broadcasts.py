"""Broadcast and sequence enums."""

from enum import Enum


class BroadcastStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BroadcastRecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class SegmentCombinator(str, Enum):
    AND = "and"
    OR = "or"


class SegmentField(str, Enum):
    HAS_TAG = "has_tag"
    MISSING_TAG = "missing_tag"
    PLATFORM = "platform"
    IS_SUBSCRIBED = "is_subscribed"
    LAST_INTERACTION = "last_interaction"
    CUSTOM_FIELD = "custom_field"


class SequenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SequenceStepType(str, Enum):
    MESSAGE = "message"
    DELAY = "delay"

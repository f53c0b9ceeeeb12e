"""Channel, conversation and message enums."""

from enum import Enum


class Platform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TELEGRAM = "telegram"
    TWITTER = "twitter"
    BLUESKY = "bluesky"
    REDDIT = "reddit"


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class AutoAssignMode(str, Enum):
    MANUAL = "manual"
    ROUND_ROBIN = "round-robin"


class GlobalKeywordAction(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    FLOW = "flow"

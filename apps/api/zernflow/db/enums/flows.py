"""Flow, trigger and session enums."""

from enum import Enum


class FlowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    POSTBACK = "postback"
    QUICK_REPLY = "quick_reply"
    WELCOME = "welcome"
    DEFAULT = "default"
    COMMENT_KEYWORD = "comment_keyword"


class KeywordMatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"


class FlowSessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NodeType(str, Enum):
    """Node kinds understood by the flow engine."""

    TRIGGER = "trigger"
    SEND_MESSAGE = "sendMessage"
    CONDITION = "condition"
    DELAY = "delay"
    ADD_TAG = "addTag"
    REMOVE_TAG = "removeTag"
    SET_CUSTOM_FIELD = "setCustomField"
    HTTP_REQUEST = "httpRequest"
    GO_TO_FLOW = "goToFlow"
    HUMAN_TAKEOVER = "humanTakeover"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    COMMENT_REPLY = "commentReply"
    PRIVATE_REPLY = "privateReply"
    AB_SPLIT = "abSplit"
    SMART_DELAY = "smartDelay"
    AI_RESPONSE = "aiResponse"
    ENROLL_SEQUENCE = "enrollSequence"


class AnalyticsEventType(str, Enum):
    FLOW_STARTED = "flow_started"
    NODE_EXECUTED = "node_executed"
    MESSAGE_SENT = "message_sent"
    MESSAGE_FAILED = "message_failed"
    FLOW_COMPLETED = "flow_completed"
    COMMENT_MATCHED = "comment_matched"

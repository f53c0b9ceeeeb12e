"""Application constants."""

# Built-in opt-out / opt-in words. Checked before workspace keywords and triggers.
COMPLIANCE_OPT_OUT_KEYWORDS = frozenset(
    {"stop", "stopall", "unsubscribe", "cancel", "end", "quit"}
)
COMPLIANCE_OPT_IN_KEYWORDS = frozenset({"start", "unstop", "subscribe"})

# Inbound provider event we act on
MESSAGE_RECEIVED_EVENT = "message.received"

# Signature header set by the messaging provider on inbound webhooks
INBOUND_SIGNATURE_HEADER = "x-late-signature"

# Outbound webhook identity
OUTBOUND_USER_AGENT = "Zernflow-Webhook/1.0"
OUTBOUND_SIGNATURE_HEADER = "X-Zernflow-Signature"

# Preview length stored on conversations for the inbox
MESSAGE_PREVIEW_LENGTH = 100

# Conversation history sent to the AI response node by default
AI_CONTEXT_MESSAGES_DEFAULT = 10

# Session variable holding the numbered options last offered on a text-only platform
NUMBERED_OPTIONS_VARIABLE = "_numbered_options"

"""Pydantic schemas for inbound provider webhooks."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _ProviderModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MessageSender(_ProviderModel):
    id: str
    name: str | None = None
    username: str | None = None
    picture: str | None = None


class MessageAttachment(_ProviderModel):
    type: str
    url: str | None = None
    payload: str | None = None


class InboundMessage(_ProviderModel):
    id: str
    conversation_id: str | None = None
    platform: str | None = None
    platform_message_id: str | None = None
    direction: str = "inbound"
    text: str | None = None
    attachments: list[MessageAttachment] = Field(default_factory=list)
    sender: MessageSender
    sent_at: str | None = None

    @field_validator("attachments", mode="before")
    @classmethod
    def null_attachments(cls, v):
        return [] if v is None else v


class InboundConversation(_ProviderModel):
    id: str
    platform_conversation_id: str | None = None
    participant_id: str | None = None
    participant_name: str | None = None
    status: str | None = None


class InboundAccount(_ProviderModel):
    id: str
    platform: str | None = None
    username: str | None = None
    display_name: str | None = None


class InboundMetadata(_ProviderModel):
    quick_reply_payload: str | None = None
    postback_payload: str | None = None
    postback_title: str | None = None
    callback_data: str | None = None


class InboundWebhookPayload(_ProviderModel):
    """``message.received`` delivery from the messaging provider."""

    event: str
    message: InboundMessage | None = None
    conversation: InboundConversation | None = None
    account: InboundAccount | None = None
    metadata: InboundMetadata = Field(default_factory=InboundMetadata)
    timestamp: str | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def null_metadata(cls, v):
        # Some platforms send "metadata": null
        return {} if v is None else v


class IncomingMessage(BaseModel):
    """Normalized inbound message handed to trigger matching and flows."""

    text: str | None = None
    postback_payload: str | None = None
    quick_reply_payload: str | None = None
    callback_data: str | None = None
    sender_id: str | None = None
    sender_name: str | None = None
    sender_username: str | None = None


class IngestResult(BaseModel):
    ok: bool = True
    skipped: bool = False
    reason: str | None = None
    message_id: str | None = None
    contact_id: str | None = None
    conversation_id: str | None = None
    flow_id: str | None = None

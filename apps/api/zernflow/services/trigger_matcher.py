"""Resolve an inbound message to the single trigger that should run.

Tier order (first match wins): postback, quick_reply, keyword, welcome,
AI intent (when the workspace has an AI key), default. A trigger's own
``priority`` only orders candidates inside a tier.
"""

import logging
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from zernflow.db.enums import FlowStatus, KeywordMatchType, MessageDirection, TriggerType
from zernflow.db.models import Channel, Flow, Message, Trigger, Workspace
from zernflow.schemas.webhook import IncomingMessage
from zernflow.services import ai_provider
from zernflow.utils import normalize_text

logger = logging.getLogger(__name__)


def get_candidate_triggers(
    db: Session, channel_id: UUID, trigger_types: list[TriggerType] | None = None
) -> list[Trigger]:
    """Active triggers on published flows, channel-scoped or global, highest priority first."""
    channel_workspace = select(Channel.workspace_id).where(Channel.id == channel_id).scalar_subquery()
    query = (
        db.query(Trigger)
        .join(Flow, Flow.id == Trigger.flow_id)
        .filter(
            Trigger.is_active.is_(True),
            Flow.status == FlowStatus.PUBLISHED.value,
            Flow.workspace_id == channel_workspace,
            or_(Trigger.channel_id == channel_id, Trigger.channel_id.is_(None)),
        )
    )
    if trigger_types:
        query = query.filter(Trigger.type.in_([t.value for t in trigger_types]))
    return query.order_by(Trigger.priority.desc(), Trigger.created_at).all()


def keyword_entries(config: dict | None) -> list[tuple[str, str]]:
    """
    Normalize ``config.keywords`` to ``(keyword, match_type)`` pairs.

    Keywords may be plain strings or ``{value, matchType}``; the match type
    falls back to the trigger-level ``matchType`` and then ``contains``.
    """
    config = config or {}
    default_match = config.get("matchType") or KeywordMatchType.CONTAINS.value
    entries = []
    for keyword in config.get("keywords") or []:
        if isinstance(keyword, str):
            value, match_type = keyword, default_match
        elif isinstance(keyword, dict) and keyword.get("value"):
            value = keyword["value"]
            match_type = keyword.get("matchType") or default_match
        else:
            continue
        value = normalize_text(value)
        if value:
            entries.append((value, match_type))
    return entries


def keyword_matches(text: str, keyword: str, match_type: str) -> bool:
    if match_type == KeywordMatchType.EXACT.value:
        return text == keyword
    if match_type == KeywordMatchType.STARTS_WITH.value:
        return text.startswith(keyword)
    return keyword in text


def match_keyword_config(text: str, config: dict | None) -> bool:
    """True when any keyword matches and no ``excludeKeywords`` term is present."""
    text = normalize_text(text)
    if not text:
        return False
    if not any(keyword_matches(text, kw, mt) for kw, mt in keyword_entries(config)):
        return False
    excluded = [normalize_text(term) for term in (config or {}).get("excludeKeywords") or []]
    return not any(term and term in text for term in excluded)


def _payload_match(triggers: list[Trigger], trigger_type: TriggerType, payload: str | None):
    if not payload:
        return None
    for trigger in triggers:
        if trigger.type == trigger_type.value and (trigger.config or {}).get("payload") == payload:
            return trigger
    return None


def _first_of_type(triggers: list[Trigger], trigger_type: TriggerType) -> Trigger | None:
    for trigger in triggers:
        if trigger.type == trigger_type.value:
            return trigger
    return None


def count_inbound_messages(db: Session, conversation_id: UUID) -> int:
    return (
        db.query(func.count(Message.id))
        .filter(
            Message.conversation_id == conversation_id,
            Message.direction == MessageDirection.INBOUND.value,
        )
        .scalar()
        or 0
    )


async def _match_by_ai_intent(
    db: Session, channel_id: UUID, keyword_triggers: list[Trigger], text: str
) -> Trigger | None:
    workspace = (
        db.query(Workspace)
        .join(Channel, Channel.workspace_id == Workspace.id)
        .filter(Channel.id == channel_id)
        .first()
    )
    provider = ai_provider.get_provider(workspace)
    if provider is None:
        return None
    intents = [[kw for kw, _ in keyword_entries(t.config)] for t in keyword_triggers]
    index = await ai_provider.classify_intent(provider, text, intents)
    if index is None:
        return None
    return keyword_triggers[index]


async def match_trigger(
    db: Session,
    channel_id: UUID,
    conversation_id: UUID,
    incoming: IncomingMessage,
) -> Trigger | None:
    """Return the trigger to run for ``incoming``, or None (message is still stored)."""
    triggers = get_candidate_triggers(db, channel_id)
    if not triggers:
        return None

    match = _payload_match(triggers, TriggerType.POSTBACK, incoming.postback_payload)
    if match:
        return match

    match = _payload_match(triggers, TriggerType.QUICK_REPLY, incoming.quick_reply_payload)
    if match:
        return match

    keyword_triggers = [t for t in triggers if t.type == TriggerType.KEYWORD.value]
    if incoming.text:
        for trigger in keyword_triggers:
            if match_keyword_config(incoming.text, trigger.config):
                return trigger

    welcome = _first_of_type(triggers, TriggerType.WELCOME)
    if welcome and count_inbound_messages(db, conversation_id) == 1:
        return welcome

    if incoming.text and keyword_triggers:
        match = await _match_by_ai_intent(db, channel_id, keyword_triggers, incoming.text)
        if match:
            logger.info("Trigger %s matched by AI intent", match.id)
            return match

    return _first_of_type(triggers, TriggerType.DEFAULT)

"""Segment resolution - turn a broadcast audience filter into recipients.

Every rule evaluates to a set of contact ids drawn from the workspace's
subscribed contacts; groups combine their rules, the filter combines its
groups, each with its own and/or combinator.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.db.enums import SegmentCombinator, SegmentField
from zernflow.db.models import (
    Channel,
    Contact,
    ContactChannel,
    ContactCustomField,
    ContactTag,
    CustomFieldDefinition,
    Tag,
)
from zernflow.schemas.segment import SegmentFilter, SegmentRule
from zernflow.utils import parse_iso_datetime

logger = logging.getLogger(__name__)


def get_subscribed_contact_ids(db: Session, workspace_id: UUID, limit: int | None = None) -> set[UUID]:
    rows = (
        db.query(Contact.id)
        .filter(Contact.workspace_id == workspace_id, Contact.is_subscribed.is_(True))
        .order_by(Contact.created_at)
        .limit(limit or settings.SEGMENT_MAX_CONTACTS)
        .all()
    )
    return {contact_id for (contact_id,) in rows}


def _tagged_contact_ids(db: Session, workspace_id: UUID, tag_name: str) -> set[UUID] | None:
    tag = db.query(Tag).filter(Tag.workspace_id == workspace_id, Tag.name == tag_name).first()
    if not tag:
        return None
    rows = db.query(ContactTag.contact_id).filter(ContactTag.tag_id == tag.id).all()
    return {contact_id for (contact_id,) in rows}


def _platform_contact_ids(db: Session, workspace_id: UUID, platform: str) -> set[UUID]:
    rows = (
        db.query(ContactChannel.contact_id)
        .join(Channel, Channel.id == ContactChannel.channel_id)
        .filter(Channel.workspace_id == workspace_id, Channel.platform == platform)
        .all()
    )
    return {contact_id for (contact_id,) in rows}


def _compare_field(actual: str | None, operator: str, expected: str) -> bool:
    if actual is None:
        return False
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return expected.lower() in actual.lower()
    if operator in ("gt", "lt"):
        try:
            left, right = float(actual), float(expected)
        except ValueError:
            # Non-numeric values compare as text
            left, right = actual, expected
        return left > right if operator == "gt" else left < right
    return False


def evaluate_rule(
    db: Session, workspace_id: UUID, rule: SegmentRule, candidates: set[UUID]
) -> set[UUID]:
    """Subset of ``candidates`` matching one rule."""
    if rule.field == SegmentField.HAS_TAG:
        tagged = _tagged_contact_ids(db, workspace_id, rule.value)
        return candidates & tagged if tagged else set()

    if rule.field == SegmentField.MISSING_TAG:
        tagged = _tagged_contact_ids(db, workspace_id, rule.value)
        return candidates - tagged if tagged else set(candidates)

    if rule.field == SegmentField.PLATFORM:
        linked = _platform_contact_ids(db, workspace_id, rule.value)
        if rule.operator == "not_equals":
            return candidates - linked
        return candidates & linked

    if rule.field == SegmentField.IS_SUBSCRIBED:
        # Candidates are already the subscribed contacts
        return set() if rule.value.lower() == "false" else set(candidates)

    if rule.field == SegmentField.LAST_INTERACTION:
        cutoff = parse_iso_datetime(rule.value)
        if cutoff is None:
            logger.warning("Segment rule has an unparseable date: %r", rule.value)
            return set()
        query = db.query(Contact.id).filter(Contact.workspace_id == workspace_id)
        if rule.operator == "before":
            query = query.filter(Contact.last_interaction_at < cutoff)
        else:
            query = query.filter(Contact.last_interaction_at > cutoff)
        return candidates & {contact_id for (contact_id,) in query.all()}

    if rule.field == SegmentField.CUSTOM_FIELD:
        slug, _, expected = rule.value.partition(":")
        definition = (
            db.query(CustomFieldDefinition)
            .filter(
                CustomFieldDefinition.workspace_id == workspace_id,
                CustomFieldDefinition.slug == slug,
            )
            .first()
        )
        if not definition:
            return set()
        rows = (
            db.query(ContactCustomField.contact_id, ContactCustomField.value)
            .filter(ContactCustomField.field_id == definition.id)
            .all()
        )
        return {
            contact_id
            for contact_id, value in rows
            if contact_id in candidates and _compare_field(value, rule.operator, expected)
        }

    return set(candidates)


def _combine(sets: list[set[UUID]], combinator: SegmentCombinator) -> set[UUID]:
    if not sets:
        return set()
    if combinator == SegmentCombinator.AND:
        return set.intersection(*sets)
    return set.union(*sets)


def resolve_contact_ids(db: Session, workspace_id: UUID, raw_filter: dict | None) -> set[UUID]:
    """
    Contact ids matching a stored segment filter.

    No filter (or no groups) means every subscribed contact. Results never
    include unsubscribed contacts.
    """
    candidates = get_subscribed_contact_ids(db, workspace_id)
    segment = SegmentFilter.from_stored(raw_filter)
    if segment is None or not segment.groups or not candidates:
        return candidates

    group_results = []
    for group in segment.groups:
        rule_results = [evaluate_rule(db, workspace_id, rule, candidates) for rule in group.rules]
        group_results.append(_combine(rule_results, group.combinator))
    return _combine(group_results, segment.combinator)


def resolve_recipients(
    db: Session,
    workspace_id: UUID,
    raw_filter: dict | None,
    channel_id: UUID | None = None,
) -> list[tuple[UUID, UUID]]:
    """
    One ``(contact_id, channel_id)`` pair per matched contact.

    A contact linked to several channels gets only its first link (oldest
    first), optionally restricted to ``channel_id``. Inactive channels are
    skipped.
    """
    contact_ids = resolve_contact_ids(db, workspace_id, raw_filter)
    if not contact_ids:
        return []

    query = (
        db.query(ContactChannel.contact_id, ContactChannel.channel_id)
        .join(Channel, Channel.id == ContactChannel.channel_id)
        .filter(
            Channel.workspace_id == workspace_id,
            Channel.is_active.is_(True),
        )
    )
    if channel_id:
        query = query.filter(ContactChannel.channel_id == channel_id)

    seen: set[UUID] = set()
    recipients = []
    for contact_id, link_channel_id in query.order_by(ContactChannel.created_at).all():
        if contact_id not in contact_ids or contact_id in seen:
            continue
        seen.add(contact_id)
        recipients.append((contact_id, link_channel_id))
    return recipients

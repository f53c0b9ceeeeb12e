"""Contact tags, custom fields and subscription state."""

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zernflow.db.models import (
    BotField,
    Contact,
    ContactCustomField,
    ContactTag,
    CustomFieldDefinition,
    Tag,
)


def get_or_create_tag(db: Session, workspace_id: UUID, name: str) -> Tag:
    """Find a tag by name, creating it on first use (unique per workspace)."""
    tag = db.query(Tag).filter(Tag.workspace_id == workspace_id, Tag.name == name).first()
    if tag:
        return tag
    tag = Tag(workspace_id=workspace_id, name=name)
    try:
        with db.begin_nested():
            db.add(tag)
    except IntegrityError:
        # Created concurrently
        tag = db.query(Tag).filter(Tag.workspace_id == workspace_id, Tag.name == name).one()
    return tag


def add_tag(db: Session, contact: Contact, name: str) -> bool:
    """Tag a contact. Returns False when the tag was already present."""
    tag = get_or_create_tag(db, contact.workspace_id, name)
    existing = db.get(ContactTag, (contact.id, tag.id))
    if existing:
        return False
    db.add(ContactTag(contact_id=contact.id, tag_id=tag.id))
    db.flush()
    return True


def remove_tag(db: Session, contact: Contact, name: str) -> bool:
    """Untag a contact. Returns False when it did not carry the tag."""
    tag = (
        db.query(Tag)
        .filter(Tag.workspace_id == contact.workspace_id, Tag.name == name)
        .first()
    )
    if not tag:
        return False
    deleted = (
        db.query(ContactTag)
        .filter(ContactTag.contact_id == contact.id, ContactTag.tag_id == tag.id)
        .delete(synchronize_session=False)
    )
    db.flush()
    return bool(deleted)


def get_tag_names(db: Session, contact_id: UUID) -> set[str]:
    rows = (
        db.query(Tag.name)
        .join(ContactTag, ContactTag.tag_id == Tag.id)
        .filter(ContactTag.contact_id == contact_id)
        .all()
    )
    return {name for (name,) in rows}


def get_custom_field_values(db: Session, contact_id: UUID) -> dict[str, str | None]:
    """Custom field values keyed by slug."""
    rows = (
        db.query(CustomFieldDefinition.slug, ContactCustomField.value)
        .join(ContactCustomField, ContactCustomField.field_id == CustomFieldDefinition.id)
        .filter(ContactCustomField.contact_id == contact_id)
        .all()
    )
    return {slug: value for slug, value in rows}


def set_custom_field(db: Session, contact: Contact, slug: str, value: str) -> bool:
    """
    Upsert a custom field value by slug.

    Returns False (and writes nothing) when the workspace has no field with that slug.
    """
    definition = (
        db.query(CustomFieldDefinition)
        .filter(
            CustomFieldDefinition.workspace_id == contact.workspace_id,
            CustomFieldDefinition.slug == slug,
        )
        .first()
    )
    if not definition:
        return False
    row = (
        db.query(ContactCustomField)
        .filter(
            ContactCustomField.contact_id == contact.id,
            ContactCustomField.field_id == definition.id,
        )
        .first()
    )
    if row:
        row.value = value
    else:
        db.add(ContactCustomField(contact_id=contact.id, field_id=definition.id, value=value))
    db.flush()
    return True


def set_subscription(db: Session, contact: Contact, subscribed: bool) -> bool:
    """Returns True when the flag actually changed."""
    if contact.is_subscribed == subscribed:
        return False
    contact.is_subscribed = subscribed
    db.flush()
    return True


def get_bot_fields(db: Session, workspace_id: UUID) -> dict[str, str]:
    rows = db.query(BotField.name, BotField.value).filter(BotField.workspace_id == workspace_id).all()
    return {name: value or "" for name, value in rows}

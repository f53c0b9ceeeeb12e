"""Comment polling - run ``comment_keyword`` triggers against public post comments."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import AnalyticsEventType, FlowStatus, TriggerType
from zernflow.db.models import Channel, CommentLog, Flow, Trigger, Workspace
from zernflow.schemas.webhook import IncomingMessage
from zernflow.services import (
    analytics_service,
    flow_engine,
    ingestion_service,
    messaging_provider,
    trigger_matcher,
)
from zernflow.services.flow_context import FlowExecutionError
from zernflow.services.messaging_provider import MessagingProvider, ProviderError
from zernflow.utils import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

COMMENT_PREVIEW_LENGTH = 80


@dataclass
class PolledComment:
    id: str
    text: str
    post_id: str
    created_at: str | None = None
    author_id: str | None = None
    author_name: str | None = None
    author_username: str | None = None


@dataclass
class PollStats:
    channels: int = 0
    processed: int = 0
    matched: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "channels": self.channels,
            "processed": self.processed,
            "matched": self.matched,
            "errors": self.errors,
        }


def flatten_comments(post_id: str, raw_comments: list[dict]) -> list[PolledComment]:
    """Top-level comments plus their replies, oldest first, without the account's own."""
    flat = []
    for comment in raw_comments:
        flat.append(comment)
        flat.extend(comment.get("replies") or [])

    comments = []
    for raw in flat:
        author = raw.get("from") or {}
        if author.get("isOwner"):
            continue
        if not raw.get("id"):
            continue
        comments.append(
            PolledComment(
                id=str(raw["id"]),
                text=raw.get("message") or "",
                post_id=post_id,
                created_at=raw.get("createdTime"),
                author_id=author.get("id"),
                author_name=author.get("name"),
                author_username=author.get("username"),
            )
        )

    def _sort_key(comment: PolledComment):
        return parse_iso_datetime(comment.created_at) or utcnow()

    return sorted(comments, key=_sort_key)


def get_comment_triggers(db: Session, channel_id) -> list[Trigger]:
    return trigger_matcher.get_candidate_triggers(db, channel_id, [TriggerType.COMMENT_KEYWORD])


def match_comment_trigger(comment: PolledComment, triggers: list[Trigger]) -> Trigger | None:
    for trigger in triggers:
        config = trigger.config or {}
        post_ids = config.get("postIds") or []
        if post_ids and comment.post_id not in post_ids:
            continue
        if trigger_matcher.match_keyword_config(comment.text, config):
            return trigger
    return None


def is_processed(db: Session, channel_id, comment_id: str) -> bool:
    return (
        db.query(CommentLog.id)
        .filter(CommentLog.channel_id == channel_id, CommentLog.platform_comment_id == comment_id)
        .first()
        is not None
    )


def log_comment(
    db: Session,
    channel: Channel,
    comment: PolledComment,
    trigger: Trigger | None = None,
    contact_id=None,
) -> None:
    try:
        with db.begin_nested():
            db.add(
                CommentLog(
                    workspace_id=channel.workspace_id,
                    channel_id=channel.id,
                    platform_comment_id=comment.id,
                    post_id=comment.post_id,
                    author_id=comment.author_id,
                    author_name=comment.author_name,
                    comment_text=comment.text[:2000],
                    trigger_id=trigger.id if trigger else None,
                    flow_id=trigger.flow_id if trigger else None,
                    contact_id=contact_id,
                )
            )
    except IntegrityError:
        logger.info("Comment %s already logged", comment.id)
    db.commit()


async def process_comment(
    db: Session,
    channel: Channel,
    provider: MessagingProvider,
    comment: PolledComment,
    triggers: list[Trigger],
) -> bool:
    """Handle one new comment. Returns True when a trigger matched."""
    trigger = match_comment_trigger(comment, triggers)
    if trigger is None:
        log_comment(db, channel, comment)
        return False

    config = trigger.config or {}
    reply_sent = False
    if config.get("replyText"):
        try:
            await provider.reply_to_comment(
                channel.late_account_id, comment.post_id, comment.id, config["replyText"]
            )
            reply_sent = True
        except ProviderError as exc:
            logger.warning("Comment reply failed: %s", exc, extra=build_log_context(channel_id=str(channel.id)))

    sender_id = comment.author_id or f"comment_{comment.id}"
    sender_name = comment.author_name or comment.author_username or "Unknown commenter"
    contact, _ = ingestion_service.upsert_contact(
        db, channel, sender_id, sender_name, comment.author_username
    )
    conversation, _ = ingestion_service.upsert_conversation(
        db, channel, contact, None, f"[Comment] {comment.text[:COMMENT_PREVIEW_LENGTH]}"
    )
    db.commit()

    flow_ran = False
    flow = db.get(Flow, trigger.flow_id)
    if flow is not None and flow.status == FlowStatus.PUBLISHED.value:
        try:
            await flow_engine.execute_flow(
                db,
                flow,
                contact=contact,
                channel=channel,
                conversation=conversation,
                incoming=IncomingMessage(
                    text=comment.text,
                    sender_id=comment.id,
                    sender_name=comment.author_name,
                    sender_username=comment.author_username,
                ),
                trigger_id=trigger.id,
                variables={
                    "comment_text": comment.text,
                    "commenter_name": sender_name,
                    "post_id": comment.post_id,
                    "comment_id": comment.id,
                },
            )
            flow_ran = True
        except FlowExecutionError as exc:
            logger.error("Comment flow failed: %s", exc, extra=build_log_context(flow_id=str(flow.id)))

    analytics_service.record_event(
        db,
        channel.workspace_id,
        AnalyticsEventType.COMMENT_MATCHED,
        flow_id=trigger.flow_id,
        contact_id=contact.id,
        metadata={
            "triggerId": str(trigger.id),
            "postId": comment.post_id,
            "commentId": comment.id,
            "replySent": reply_sent,
            "flowRan": flow_ran,
        },
    )
    log_comment(db, channel, comment, trigger, contact.id)
    return True


async def poll_channel(db: Session, channel: Channel, stats: PollStats) -> None:
    triggers = get_comment_triggers(db, channel.id)
    if not triggers:
        return
    workspace = db.get(Workspace, channel.workspace_id)
    provider = messaging_provider.get_provider(workspace)
    if provider is None:
        logger.error("No messaging provider key", extra=build_log_context(workspace_id=str(channel.workspace_id)))
        return

    stats.channels += 1
    try:
        posts = await provider.list_posts(channel.late_account_id)
    except ProviderError as exc:
        logger.warning("Listing posts failed: %s", exc, extra=build_log_context(channel_id=str(channel.id)))
        stats.errors += 1
        return

    for post in posts:
        post_id = str(post.get("id") or "")
        if not post_id:
            continue
        try:
            raw_comments = await provider.list_comments(channel.late_account_id, post_id)
        except ProviderError as exc:
            logger.warning("Listing comments failed: %s", exc, extra=build_log_context(channel_id=str(channel.id)))
            stats.errors += 1
            continue

        for comment in flatten_comments(post_id, raw_comments):
            if is_processed(db, channel.id, comment.id):
                continue
            if await process_comment(db, channel, provider, comment, triggers):
                stats.matched += 1
            stats.processed += 1

    channel.last_comment_cursor = utcnow()
    db.commit()


async def poll_comments(db: Session) -> dict[str, int]:
    """Poll every active channel that has a live ``comment_keyword`` trigger."""
    has_triggers = (
        db.query(Trigger.id)
        .join(Flow, Flow.id == Trigger.flow_id)
        .filter(
            Trigger.type == TriggerType.COMMENT_KEYWORD.value,
            Trigger.is_active.is_(True),
            Flow.status == FlowStatus.PUBLISHED.value,
        )
        .first()
    )
    stats = PollStats()
    if has_triggers is None:
        return stats.as_dict()

    channels = db.query(Channel).filter(Channel.is_active.is_(True)).order_by(Channel.created_at).all()
    for channel in channels:
        try:
            await poll_channel(db, channel, stats)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("Comment polling failed", extra=build_log_context(channel_id=str(channel.id)))
    return stats.as_dict()

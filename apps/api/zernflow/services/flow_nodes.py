"""
Node handlers for the flow engine.

Each node type maps to one async handler ``(engine, ctx, node) -> NodeResult``.
Handlers never traverse on their own; they perform the node's effect and
tell the engine how to continue.
"""

from __future__ import annotations

import json
import logging
import random
import re
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

import httpx

from zernflow.core.constants import AI_CONTEXT_MESSAGES_DEFAULT, NUMBERED_OPTIONS_VARIABLE
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import (
    AnalyticsEventType,
    FlowStatus,
    MessageDirection,
    MessageStatus,
    NodeType,
    WebhookEventType,
)
from zernflow.db.models import Flow, Message
from zernflow.jobs.utils import safe_url
from zernflow.schemas import flow as flow_schemas
from zernflow.services import (
    ai_provider,
    analytics_service,
    contact_service,
    messaging_provider,
    platform_adapter,
    sequence_service,
    webhook_dispatcher,
)
from zernflow.services.flow_context import (
    COMPLETE,
    CONTINUE,
    PAUSE,
    FlowExecutionContext,
    NodeResult,
    follow,
)
from zernflow.services.messaging_provider import OutboundMessage, ProviderError
from zernflow.utils import utcnow

logger = logging.getLogger(__name__)

NodeHandler = Callable[[Any, FlowExecutionContext, Any], Awaitable[NodeResult]]

_TOKEN_RE = re.compile(r"\{\{(\w+)\}\}")

DELAY_UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}

AI_FAILED_TEXT = "[AI response failed]"
HTTP_NODE_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Helpers
# =============================================================================


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate_variables(text: str | None, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` tokens; unknown tokens are left verbatim."""
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return _stringify(value)

    return _TOKEN_RE.sub(_replace, text)


def evaluate_condition(actual: str | None, operator: str, expected: str) -> bool:
    """Evaluate one predicate; gt/lt coerce both sides to numbers."""
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return bool(actual) and expected in actual
    if operator == "exists":
        return actual is not None and actual != ""
    if operator in ("gt", "lt"):
        try:
            left = float(actual)
            right = float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "gt" else left < right
    return False


def resolve_condition_field(db, ctx: FlowExecutionContext, field: str) -> str | None:
    if field == "platform":
        return ctx.platform
    if field == "is_subscribed":
        return _stringify(ctx.contact.is_subscribed)
    if field.startswith("tag:"):
        tag_name = field[len("tag:"):]
        return _stringify(tag_name in contact_service.get_tag_names(db, ctx.contact.id))
    if field.startswith("variable:"):
        value = ctx.variables.get(field[len("variable:"):])
        return None if value is None else _stringify(value)
    return contact_service.get_custom_field_values(db, ctx.contact.id).get(field)


def _delivery_target(ctx: FlowExecutionContext):
    """Provider plus provider conversation id, or None when sending is impossible."""
    provider = messaging_provider.get_provider(ctx.workspace)
    if provider is None:
        logger.warning(
            "Workspace has no messaging provider key; skipping send",
            extra=build_log_context(workspace_id=str(ctx.workspace.id), flow_id=str(ctx.flow.id)),
        )
        return None
    if not ctx.conversation or not ctx.conversation.late_conversation_id:
        logger.error(
            "No provider conversation id for conversation %s",
            ctx.conversation.id if ctx.conversation else None,
            extra=build_log_context(channel_id=str(ctx.channel.id), flow_id=str(ctx.flow.id)),
        )
        return None
    return provider, ctx.conversation.late_conversation_id


async def send_outbound(
    engine,
    ctx: FlowExecutionContext,
    provider,
    late_conversation_id: str,
    outbound: OutboundMessage,
    node_id: str,
    failure_text: str | None = None,
) -> Message:
    """Send one message, store it as sent or failed and emit the matching events."""
    db = engine.db
    message = Message(
        conversation_id=ctx.conversation.id,
        direction=MessageDirection.OUTBOUND.value,
        text=outbound.text,
        attachments=outbound.attachments or None,
        sent_by_flow_id=ctx.flow.id,
        sent_by_node_id=node_id,
    )
    try:
        message.platform_message_id = await provider.send_message(
            ctx.channel.late_account_id, late_conversation_id, outbound
        )
        message.status = MessageStatus.SENT.value
    except ProviderError as exc:
        logger.warning("Flow message failed: %s", exc, extra=build_log_context(flow_id=str(ctx.flow.id)))
        message.status = MessageStatus.FAILED.value
        message.error_message = str(exc)[:500]
        if failure_text is not None:
            message.text = failure_text
    db.add(message)
    db.commit()

    if message.status == MessageStatus.SENT.value:
        analytics_service.record_event(
            db,
            ctx.workspace.id,
            AnalyticsEventType.MESSAGE_SENT,
            flow_id=ctx.flow.id,
            contact_id=ctx.contact.id,
            metadata={"nodeId": node_id},
        )
        db.commit()
        webhook_dispatcher.dispatch_event(
            db,
            ctx.workspace.id,
            WebhookEventType.MESSAGE_SENT,
            {
                "messageId": str(message.id),
                "conversationId": str(ctx.conversation.id),
                "contactId": str(ctx.contact.id),
                "flowId": str(ctx.flow.id),
                "text": message.text,
            },
        )
    else:
        analytics_service.record_event(
            db,
            ctx.workspace.id,
            AnalyticsEventType.MESSAGE_FAILED,
            flow_id=ctx.flow.id,
            contact_id=ctx.contact.id,
            metadata={"nodeId": node_id, "error": message.error_message},
        )
        db.commit()
    return message


# =============================================================================
# Handlers
# =============================================================================


async def handle_noop(engine, ctx: FlowExecutionContext, node) -> NodeResult:
    return CONTINUE


async def handle_send_message(
    engine, ctx: FlowExecutionContext, node: flow_schemas.SendMessageNode
) -> NodeResult:
    target = _delivery_target(ctx)
    if target is None:
        return CONTINUE
    provider, late_conversation_id = target

    for content in node.data.messages:
        outbound = platform_adapter.adapt_message(content, ctx.platform)
        outbound.text = interpolate_variables(outbound.text, ctx.variables)
        await send_outbound(engine, ctx, provider, late_conversation_id, outbound, node.id)
        if platform_adapter.is_text_only(ctx.platform):
            options = platform_adapter.numbered_options(content)
            if options:
                ctx.variables[NUMBERED_OPTIONS_VARIABLE] = options
    return CONTINUE


async def handle_condition(
    engine, ctx: FlowExecutionContext, node: flow_schemas.ConditionNode
) -> NodeResult:
    results = [
        evaluate_condition(
            resolve_condition_field(engine.db, ctx, condition.field),
            condition.operator,
            condition.value,
        )
        for condition in node.data.conditions
    ]
    passed = all(results) if node.data.logic == "and" else any(results)
    return follow("true" if passed else "false")


async def handle_delay(engine, ctx: FlowExecutionContext, node: flow_schemas.DelayNode) -> NodeResult:
    seconds = node.data.duration * DELAY_UNIT_SECONDS.get(node.data.unit, 1)
    run_at = utcnow() + timedelta(seconds=seconds)
    ctx.session.waiting_until = run_at
    engine.schedule_resume(ctx, node.id, run_at)
    return PAUSE


async def handle_smart_delay(
    engine, ctx: FlowExecutionContext, node: flow_schemas.SmartDelayNode
) -> NodeResult:
    ctx.session.waiting_for_input = True
    ctx.session.waiting_until = None
    if node.data.timeout:
        run_at = utcnow() + timedelta(
            seconds=node.data.timeout * DELAY_UNIT_SECONDS[node.data.timeout_unit]
        )
        ctx.session.waiting_until = run_at
        engine.schedule_resume(ctx, node.id, run_at, reason="timeout")
    return PAUSE


async def handle_add_tag(engine, ctx: FlowExecutionContext, node: flow_schemas.AddTagNode) -> NodeResult:
    if contact_service.add_tag(engine.db, ctx.contact, node.data.tag_name):
        engine.db.commit()
        webhook_dispatcher.dispatch_event(
            engine.db,
            ctx.workspace.id,
            WebhookEventType.TAG_ADDED,
            {"contactId": str(ctx.contact.id), "tag": node.data.tag_name},
        )
    return CONTINUE


async def handle_remove_tag(
    engine, ctx: FlowExecutionContext, node: flow_schemas.RemoveTagNode
) -> NodeResult:
    if contact_service.remove_tag(engine.db, ctx.contact, node.data.tag_name):
        engine.db.commit()
        webhook_dispatcher.dispatch_event(
            engine.db,
            ctx.workspace.id,
            WebhookEventType.TAG_REMOVED,
            {"contactId": str(ctx.contact.id), "tag": node.data.tag_name},
        )
    return CONTINUE


async def handle_set_custom_field(
    engine, ctx: FlowExecutionContext, node: flow_schemas.SetCustomFieldNode
) -> NodeResult:
    value = interpolate_variables(node.data.value, ctx.variables)
    if contact_service.set_custom_field(engine.db, ctx.contact, node.data.field_slug, value):
        ctx.variables[node.data.field_slug] = value
    else:
        logger.info("Custom field %s not defined; skipping", node.data.field_slug)
    return CONTINUE


async def handle_http_request(
    engine, ctx: FlowExecutionContext, node: flow_schemas.HttpRequestNode
) -> NodeResult:
    data = node.data
    url = interpolate_variables(data.url, ctx.variables)
    body = interpolate_variables(data.body, ctx.variables) if data.body else None
    headers = {"Content-Type": "application/json", **data.headers}

    try:
        async with httpx.AsyncClient(timeout=HTTP_NODE_TIMEOUT_SECONDS) as client:
            response = await client.request(
                data.method,
                url,
                headers=headers,
                content=body if data.method != "GET" else None,
            )
    except httpx.HTTPError as exc:
        logger.warning("HTTP request node failed for %s (%s)", safe_url(url), type(exc).__name__)
        return CONTINUE

    if data.response_variable:
        try:
            ctx.variables[data.response_variable] = response.json()
        except ValueError:
            ctx.variables[data.response_variable] = response.text
    return CONTINUE


async def handle_go_to_flow(
    engine, ctx: FlowExecutionContext, node: flow_schemas.GoToFlowNode
) -> NodeResult:
    try:
        target_id = UUID(node.data.flow_id)
    except ValueError:
        logger.warning("goToFlow node %s has an invalid flow id", node.id)
        return CONTINUE
    target = (
        engine.db.query(Flow)
        .filter(Flow.id == target_id, Flow.workspace_id == ctx.workspace.id)
        .first()
    )
    if not target or target.status != FlowStatus.PUBLISHED.value:
        logger.warning("goToFlow target %s is not a published flow", target_id)
        return CONTINUE

    parent_stack = list(ctx.session.flow_stack or [])
    if node.data.return_after:
        engine.persist(ctx)
        frame = {"sessionId": str(ctx.session.id), "flowId": str(ctx.flow.id), "nodeId": node.id}
        await engine.start_child_flow(ctx, target, parent_stack + [frame])
        # The child may already have returned into this session
        ctx.variables = dict(ctx.session.variables or {})
        return PAUSE

    # The child inherits this session's return frames
    await engine.complete_session(ctx, resume_parent=False)
    await engine.start_child_flow(ctx, target, parent_stack)
    return PAUSE


async def handle_human_takeover(
    engine, ctx: FlowExecutionContext, node: flow_schemas.HumanTakeoverNode
) -> NodeResult:
    if node.data.message:
        target = _delivery_target(ctx)
        if target is not None:
            provider, late_conversation_id = target
            outbound = OutboundMessage(text=interpolate_variables(node.data.message, ctx.variables))
            await send_outbound(engine, ctx, provider, late_conversation_id, outbound, node.id)
    if ctx.conversation:
        ctx.conversation.is_automation_paused = True
    ctx.session.human_takeover_at = utcnow()
    return COMPLETE


def _set_subscription(engine, ctx: FlowExecutionContext, subscribed: bool) -> None:
    if contact_service.set_subscription(engine.db, ctx.contact, subscribed):
        engine.db.commit()
        webhook_dispatcher.dispatch_event(
            engine.db,
            ctx.workspace.id,
            WebhookEventType.CONTACT_UPDATED,
            {"contactId": str(ctx.contact.id), "isSubscribed": subscribed},
        )


async def handle_subscribe(engine, ctx: FlowExecutionContext, node) -> NodeResult:
    _set_subscription(engine, ctx, True)
    return CONTINUE


async def handle_unsubscribe(engine, ctx: FlowExecutionContext, node) -> NodeResult:
    _set_subscription(engine, ctx, False)
    return CONTINUE


def _comment_target(ctx: FlowExecutionContext) -> tuple[str, str] | None:
    comment_id = ctx.variables.get("comment_id") or ctx.incoming.sender_id
    post_id = ctx.variables.get("post_id")
    if not comment_id or not post_id:
        logger.error("Comment reply without post_id/comment_id in flow %s", ctx.flow.id)
        return None
    return str(post_id), str(comment_id)


async def handle_comment_reply(
    engine, ctx: FlowExecutionContext, node: flow_schemas.CommentReplyNode
) -> NodeResult:
    provider = messaging_provider.get_provider(ctx.workspace)
    target = _comment_target(ctx)
    if provider is None or target is None:
        return CONTINUE
    post_id, comment_id = target
    text = interpolate_variables(node.data.text, ctx.variables)
    try:
        await provider.reply_to_comment(ctx.channel.late_account_id, post_id, comment_id, text)
    except ProviderError as exc:
        logger.warning("Comment reply failed: %s", exc)
    return CONTINUE


async def handle_private_reply(
    engine, ctx: FlowExecutionContext, node: flow_schemas.PrivateReplyNode
) -> NodeResult:
    provider = messaging_provider.get_provider(ctx.workspace)
    target = _comment_target(ctx)
    if provider is None or target is None:
        return CONTINUE
    post_id, comment_id = target
    text = interpolate_variables(node.data.text, ctx.variables)
    message = Message(
        conversation_id=ctx.conversation.id if ctx.conversation else None,
        direction=MessageDirection.OUTBOUND.value,
        text=text,
        attachments=[{"type": "image", "url": node.data.image_url}] if node.data.image_url else None,
        sent_by_flow_id=ctx.flow.id,
        sent_by_node_id=node.id,
    )
    try:
        await provider.send_private_reply(ctx.channel.late_account_id, post_id, comment_id, text)
        message.status = MessageStatus.SENT.value
    except ProviderError as exc:
        logger.warning("Private reply failed: %s", exc)
        message.status = MessageStatus.FAILED.value
        message.error_message = str(exc)[:500]
    if message.conversation_id:
        engine.db.add(message)
        engine.db.commit()
    return CONTINUE


async def handle_ab_split(engine, ctx: FlowExecutionContext, node: flow_schemas.ABSplitNode) -> NodeResult:
    paths = node.data.paths
    if not paths:
        return CONTINUE
    total = sum(path.weight for path in paths)
    draw = random.random() * total
    cumulative = 0.0
    for path in paths:
        cumulative += path.weight
        if draw <= cumulative:
            return follow(path.name)
    return follow(paths[0].name)


async def handle_ai_response(
    engine, ctx: FlowExecutionContext, node: flow_schemas.AIResponseNode
) -> NodeResult:
    db = engine.db
    provider = ai_provider.get_provider(ctx.workspace)
    if provider is None:
        logger.warning("No AI key configured for workspace %s", ctx.workspace.id)
        return CONTINUE
    target = _delivery_target(ctx)
    if target is None:
        return CONTINUE
    messaging, late_conversation_id = target

    data = node.data
    recent = (
        db.query(Message)
        .filter(Message.conversation_id == ctx.conversation.id)
        .order_by(Message.created_at.desc())
        .limit(data.context_messages or AI_CONTEXT_MESSAGES_DEFAULT)
        .all()
    )
    history = [ai_provider.ChatMessage("system", data.system_prompt)]
    for message in reversed(recent):
        if not message.text:
            continue
        role = "user" if message.direction == MessageDirection.INBOUND.value else "assistant"
        history.append(ai_provider.ChatMessage(role, message.text))

    try:
        response = await provider.chat(
            history,
            model=data.model,
            temperature=data.temperature,
            max_tokens=data.max_tokens,
        )
        text = response.content
    except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
        logger.warning("AI response generation failed (%s)", type(exc).__name__)
        failed = Message(
            conversation_id=ctx.conversation.id,
            direction=MessageDirection.OUTBOUND.value,
            text=AI_FAILED_TEXT,
            sent_by_flow_id=ctx.flow.id,
            sent_by_node_id=node.id,
            status=MessageStatus.FAILED.value,
            error_message=type(exc).__name__,
        )
        db.add(failed)
        analytics_service.record_event(
            db,
            ctx.workspace.id,
            AnalyticsEventType.MESSAGE_FAILED,
            flow_id=ctx.flow.id,
            contact_id=ctx.contact.id,
            metadata={"nodeId": node.id, "error": type(exc).__name__},
        )
        db.commit()
        return CONTINUE

    await send_outbound(
        engine,
        ctx,
        messaging,
        late_conversation_id,
        OutboundMessage(text=text),
        node.id,
        failure_text=AI_FAILED_TEXT,
    )
    return CONTINUE


async def handle_enroll_sequence(
    engine, ctx: FlowExecutionContext, node: flow_schemas.EnrollSequenceNode
) -> NodeResult:
    try:
        sequence_service.enroll_contact(
            engine.db,
            UUID(node.data.sequence_id),
            ctx.contact.id,
            ctx.channel.id,
            commit=False,
        )
    except ValueError as exc:
        logger.info("Sequence enrollment skipped: %s", exc)
    return CONTINUE


NODE_HANDLERS: Mapping[str, NodeHandler] = {
    NodeType.TRIGGER.value: handle_noop,
    NodeType.SEND_MESSAGE.value: handle_send_message,
    NodeType.CONDITION.value: handle_condition,
    NodeType.DELAY.value: handle_delay,
    NodeType.ADD_TAG.value: handle_add_tag,
    NodeType.REMOVE_TAG.value: handle_remove_tag,
    NodeType.SET_CUSTOM_FIELD.value: handle_set_custom_field,
    NodeType.HTTP_REQUEST.value: handle_http_request,
    NodeType.GO_TO_FLOW.value: handle_go_to_flow,
    NodeType.HUMAN_TAKEOVER.value: handle_human_takeover,
    NodeType.SUBSCRIBE.value: handle_subscribe,
    NodeType.UNSUBSCRIBE.value: handle_unsubscribe,
    NodeType.COMMENT_REPLY.value: handle_comment_reply,
    NodeType.PRIVATE_REPLY.value: handle_private_reply,
    NodeType.AB_SPLIT.value: handle_ab_split,
    NodeType.SMART_DELAY.value: handle_smart_delay,
    NodeType.AI_RESPONSE.value: handle_ai_response,
    NodeType.ENROLL_SEQUENCE.value: handle_enroll_sequence,
}


def resolve_node_handler(node_type: str) -> NodeHandler:
    """Handler for a node type; unknown types are pass-through."""
    return NODE_HANDLERS.get(node_type, handle_noop)

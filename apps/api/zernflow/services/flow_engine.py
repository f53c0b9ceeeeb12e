"""
Flow engine - resumable node-graph interpreter.

Execution state lives in ``flow_sessions``: the node the session stopped
on, its variables and the goToFlow return stack. Anything that waits
(delay, smartDelay timeout) is a ``resume_flow`` row in ``scheduled_jobs``;
a smartDelay without timeout is resumed by the contact's next message.

One ``FlowEngine`` instance serves one invocation (a webhook, a job) and
counts steps across every session it traverses, so a goToFlow cycle hits
the same cap as a loop inside one flow.
"""

from __future__ import annotations

import logging
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from zernflow.core.config import settings
from zernflow.core.structured_logging import build_log_context
from zernflow.db.enums import (
    AnalyticsEventType,
    FlowSessionStatus,
    FlowStatus,
    JobType,
    NodeType,
    WebhookEventType,
)
from zernflow.db.models import Channel, Contact, Conversation, Flow, FlowSession, Workspace
from zernflow.schemas.flow import FlowGraph, parse_flow_graph
from zernflow.schemas.webhook import IncomingMessage
from zernflow.services import (
    analytics_service,
    contact_service,
    flow_nodes,
    job_service,
    webhook_dispatcher,
)
from zernflow.services.flow_context import FlowExecutionContext, FlowExecutionError
from zernflow.utils import utcnow

logger = logging.getLogger(__name__)

REPLY_HANDLE = "reply"
TIMEOUT_HANDLE = "timeout"


def load_graph(flow: Flow) -> FlowGraph:
    try:
        return parse_flow_graph(flow.nodes, flow.edges)
    except ValidationError as exc:
        raise FlowExecutionError(f"Flow {flow.id} has an invalid graph: {exc.error_count()} errors") from exc


def _reply_edge_target(graph: FlowGraph, node_id: str):
    """Next node after a wait-for-input: the ``reply`` edge, else any edge but ``timeout``."""
    node = graph.next_node(node_id, REPLY_HANDLE)
    if node is not None:
        return node
    for edge in graph.edges:
        if edge.source == node_id and edge.source_handle != TIMEOUT_HANDLE:
            return graph.get_node(edge.target)
    return None


class FlowEngine:
    """Starts, traverses and resumes flow sessions."""

    def __init__(self, db: Session, max_steps: int | None = None):
        self.db = db
        self.max_steps = max_steps or settings.FLOW_MAX_STEPS
        self.steps = 0

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def initial_variables(
        self, contact: Contact, channel: Channel, incoming: IncomingMessage
    ) -> dict:
        variables = {
            "first_name": contact.first_name or "",
            "last_name": contact.last_name or "",
            "display_name": contact.display_name or "",
            "platform": channel.platform,
            "last_message": incoming.text or "",
        }
        variables.update(
            {k: v for k, v in contact_service.get_custom_field_values(self.db, contact.id).items() if v is not None}
        )
        variables.update(contact_service.get_bot_fields(self.db, contact.workspace_id))
        return variables

    def _context_for_session(
        self,
        session: FlowSession,
        flow: Flow,
        graph: FlowGraph,
        incoming: IncomingMessage | None = None,
    ) -> FlowExecutionContext:
        conversation = (
            self.db.get(Conversation, session.conversation_id) if session.conversation_id else None
        )
        return FlowExecutionContext(
            workspace=self.db.get(Workspace, flow.workspace_id),
            flow=flow,
            graph=graph,
            session=session,
            contact=self.db.get(Contact, session.contact_id),
            channel=self.db.get(Channel, session.channel_id),
            conversation=conversation,
            incoming=incoming or IncomingMessage(),
            variables=dict(session.variables or {}),
        )

    def persist(self, ctx: FlowExecutionContext) -> None:
        # Reassign so the JSON column is flagged dirty
        ctx.session.variables = dict(ctx.variables)
        self.db.commit()

    def schedule_resume(self, ctx: FlowExecutionContext, node_id: str, run_at, reason: str | None = None):
        payload = {
            "sessionId": str(ctx.session.id),
            "nodeId": node_id,
            "flowId": str(ctx.flow.id),
            "channelId": str(ctx.channel.id),
            "contactId": str(ctx.contact.id),
            "conversationId": str(ctx.conversation.id) if ctx.conversation else None,
            "workspaceId": str(ctx.workspace.id),
            "lateConversationId": ctx.conversation.late_conversation_id if ctx.conversation else None,
            "lateAccountId": ctx.channel.late_account_id,
        }
        if reason:
            payload["reason"] = reason
        # A new wait supersedes whatever job was waking the previous one
        self.drop_resume_job(ctx.session)
        job = job_service.schedule_job(
            self.db,
            JobType.RESUME_FLOW,
            payload,
            run_at=run_at,
            workspace_id=ctx.workspace.id,
            commit=False,
        )
        ctx.session.resume_job_id = job.id
        return job

    def drop_resume_job(self, session: FlowSession) -> None:
        if session.resume_job_id is not None:
            job_service.cancel_pending_job(self.db, session.resume_job_id)
            session.resume_job_id = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def execute_flow(
        self,
        flow: Flow,
        *,
        contact: Contact,
        channel: Channel,
        conversation: Conversation | None,
        incoming: IncomingMessage | None = None,
        trigger_id: UUID | None = None,
        variables: dict | None = None,
        flow_stack: list | None = None,
    ) -> FlowSession:
        """Create a session for ``flow`` and run it until it pauses or ends."""
        if flow.status != FlowStatus.PUBLISHED.value:
            raise FlowExecutionError(f"Flow {flow.id} is not published")
        graph = load_graph(flow)
        incoming = incoming or IncomingMessage()

        session_variables = self.initial_variables(contact, channel, incoming)
        if variables:
            session_variables.update(variables)

        session = FlowSession(
            contact_id=contact.id,
            flow_id=flow.id,
            channel_id=channel.id,
            conversation_id=conversation.id if conversation else None,
            status=FlowSessionStatus.ACTIVE.value,
            variables=session_variables,
            flow_stack=list(flow_stack or []),
        )
        self.db.add(session)
        self.db.commit()

        ctx = FlowExecutionContext(
            workspace=self.db.get(Workspace, flow.workspace_id),
            flow=flow,
            graph=graph,
            session=session,
            contact=contact,
            channel=channel,
            conversation=conversation,
            incoming=incoming,
            variables=dict(session_variables),
            trigger_id=trigger_id,
        )

        analytics_service.record_event(
            self.db,
            flow.workspace_id,
            AnalyticsEventType.FLOW_STARTED,
            flow_id=flow.id,
            contact_id=contact.id,
            metadata={"triggerId": str(trigger_id) if trigger_id else None},
        )
        self.db.commit()
        webhook_dispatcher.dispatch_event(
            self.db,
            flow.workspace_id,
            WebhookEventType.FLOW_STARTED,
            {"flowId": str(flow.id), "contactId": str(contact.id), "sessionId": str(session.id)},
        )

        trigger = graph.trigger_node()
        start = graph.next_node(trigger.id) if trigger else None
        if start is None:
            await self.complete_session(ctx)
            return session

        await self._traverse(ctx, start)
        return session

    async def _traverse(self, ctx: FlowExecutionContext, node) -> None:
        while node is not None:
            self.steps += 1
            if self.steps > self.max_steps:
                self._abort(ctx, f"Exceeded {self.max_steps} steps")
                raise FlowExecutionError(
                    f"Flow {ctx.flow.id} exceeded {self.max_steps} steps at node {node.id}"
                )

            ctx.session.current_node_id = node.id
            analytics_service.record_event(
                self.db,
                ctx.workspace.id,
                AnalyticsEventType.NODE_EXECUTED,
                flow_id=ctx.flow.id,
                contact_id=ctx.contact.id,
                metadata={"nodeId": node.id, "nodeType": node.type},
            )
            self.persist(ctx)

            handler = flow_nodes.resolve_node_handler(node.type)
            result = await handler(self, ctx, node)
            self.persist(ctx)

            if result.pause:
                return
            if result.complete:
                await self.complete_session(ctx)
                return
            node = ctx.graph.next_node(node.id, result.handle)

        await self.complete_session(ctx)

    def _abort(self, ctx: FlowExecutionContext, error: str) -> None:
        """Cancel the session and every parent frame waiting on it."""
        now = utcnow()
        sessions = [ctx.session]
        for frame in ctx.session.flow_stack or []:
            parent = self.db.get(FlowSession, UUID(frame["sessionId"]))
            if parent is not None:
                sessions.append(parent)
        for session in sessions:
            if session.status == FlowSessionStatus.ACTIVE.value:
                session.status = FlowSessionStatus.CANCELLED.value
                session.error = error[:500]
                session.completed_at = now
        ctx.session.variables = dict(ctx.variables)
        self.db.commit()
        logger.error(
            "Flow session %s cancelled: %s",
            ctx.session.id,
            error,
            extra=build_log_context(workspace_id=str(ctx.workspace.id), flow_id=str(ctx.flow.id)),
        )

    async def complete_session(self, ctx: FlowExecutionContext, resume_parent: bool = True) -> None:
        session = ctx.session
        if session.status != FlowSessionStatus.ACTIVE.value:
            return
        session.status = FlowSessionStatus.COMPLETED.value
        session.completed_at = utcnow()
        session.waiting_for_input = False
        session.waiting_until = None
        self.drop_resume_job(session)
        self.persist(ctx)

        analytics_service.record_event(
            self.db,
            ctx.workspace.id,
            AnalyticsEventType.FLOW_COMPLETED,
            flow_id=ctx.flow.id,
            contact_id=ctx.contact.id,
        )
        self.db.commit()
        webhook_dispatcher.dispatch_event(
            self.db,
            ctx.workspace.id,
            WebhookEventType.FLOW_COMPLETED,
            {"flowId": str(ctx.flow.id), "contactId": str(ctx.contact.id), "sessionId": str(session.id)},
        )

        if resume_parent and session.flow_stack:
            frame = session.flow_stack[-1]
            await self._return_to_parent(frame, ctx.variables)

    async def _return_to_parent(self, frame: dict, child_variables: dict) -> None:
        parent = self.db.get(FlowSession, UUID(frame["sessionId"]))
        if parent is None or parent.status != FlowSessionStatus.ACTIVE.value:
            return
        if parent.current_node_id != frame.get("nodeId"):
            return
        flow = self.db.get(Flow, parent.flow_id)
        if flow is None:
            return
        ctx = self._context_for_session(parent, flow, load_graph(flow))
        ctx.variables.update(child_variables)
        next_node = ctx.graph.next_node(frame["nodeId"])
        if next_node is None:
            await self.complete_session(ctx)
            return
        await self._traverse(ctx, next_node)

    async def start_child_flow(self, ctx: FlowExecutionContext, target: Flow, flow_stack: list) -> None:
        await self.execute_flow(
            target,
            contact=ctx.contact,
            channel=ctx.channel,
            conversation=ctx.conversation,
            incoming=ctx.incoming,
            variables=dict(ctx.variables),
            flow_stack=flow_stack,
        )

    def cancel_session(self, session: FlowSession, error: str | None = None) -> None:
        session.status = FlowSessionStatus.CANCELLED.value
        session.completed_at = utcnow()
        session.waiting_for_input = False
        session.waiting_until = None
        self.drop_resume_job(session)
        if error:
            session.error = error[:500]
        self.db.commit()

    async def resume_session(
        self,
        session: FlowSession,
        *,
        incoming: IncomingMessage | None = None,
        node_id: str | None = None,
        timed_out: bool = False,
        job_id: UUID | None = None,
    ) -> bool:
        """
        Continue a paused session.

        ``incoming`` resumes a wait-for-input; ``timed_out`` follows the
        smartDelay ``timeout`` edge; otherwise this is a delay expiring.
        ``job_id`` is the resume job doing the waking; it must still be the
        session's current one. Returns False when the session is no longer in
        the expected state, which is how stale resume jobs become no-ops.
        """
        if session.status != FlowSessionStatus.ACTIVE.value:
            return False
        if job_id is not None and session.resume_job_id != job_id:
            return False
        if node_id is not None and session.current_node_id != node_id:
            return False

        flow = self.db.get(Flow, session.flow_id)
        if flow is None:
            self.cancel_session(session, "Flow no longer exists")
            return False
        ctx = self._context_for_session(session, flow, load_graph(flow), incoming)

        if ctx.conversation is not None and ctx.conversation.is_automation_paused:
            self.cancel_session(session, "Automation paused for human takeover")
            return False

        current = ctx.graph.get_node(session.current_node_id)
        if current is None:
            await self.complete_session(ctx)
            return True

        if incoming is not None:
            if not session.waiting_for_input:
                return False
            ctx.variables["last_message"] = incoming.text or ""
            if current.type == NodeType.SMART_DELAY.value and current.data.save_as:
                ctx.variables[current.data.save_as] = incoming.text or ""
            next_node = _reply_edge_target(ctx.graph, current.id)
        elif timed_out:
            if not session.waiting_for_input:
                return False
            if session.waiting_until is None or session.waiting_until > utcnow():
                return False
            next_node = ctx.graph.next_node(current.id, TIMEOUT_HANDLE)
        else:
            if session.waiting_for_input:
                return False
            if session.waiting_until is not None and session.waiting_until > utcnow():
                return False
            next_node = ctx.graph.next_node(current.id)

        session.waiting_for_input = False
        session.waiting_until = None
        self.drop_resume_job(session)
        self.persist(ctx)

        if next_node is None:
            await self.complete_session(ctx)
            return True
        await self._traverse(ctx, next_node)
        return True


# =============================================================================
# Module-level entry points
# =============================================================================


async def execute_flow(db: Session, flow: Flow, **kwargs) -> FlowSession:
    return await FlowEngine(db).execute_flow(flow, **kwargs)


async def resume_session(db: Session, session: FlowSession, **kwargs) -> bool:
    return await FlowEngine(db).resume_session(session, **kwargs)


def get_waiting_session(db: Session, contact_id: UUID, channel_id: UUID) -> FlowSession | None:
    """The contact's active session on this channel that waits for a reply, if any."""
    return (
        db.query(FlowSession)
        .filter(
            FlowSession.contact_id == contact_id,
            FlowSession.channel_id == channel_id,
            FlowSession.status == FlowSessionStatus.ACTIVE.value,
            FlowSession.waiting_for_input.is_(True),
        )
        .order_by(FlowSession.created_at.desc())
        .first()
    )


def cancel_contact_sessions(db: Session, contact_id: UUID, reason: str) -> int:
    """Cancel every active session of a contact; pending resume jobs then no-op."""
    return (
        db.query(FlowSession)
        .filter(
            FlowSession.contact_id == contact_id,
            FlowSession.status == FlowSessionStatus.ACTIVE.value,
        )
        .update(
            {
                "status": FlowSessionStatus.CANCELLED.value,
                "error": reason,
                "completed_at": utcnow(),
                "waiting_for_input": False,
            },
            synchronize_session="fetch",
        )
    )

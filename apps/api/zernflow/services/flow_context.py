"""Execution context and node outcomes shared by the flow engine and its node handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from zernflow.db.models import Channel, Contact, Conversation, Flow, FlowSession, Workspace
from zernflow.schemas.flow import FlowGraph
from zernflow.schemas.webhook import IncomingMessage


class FlowExecutionError(Exception):
    """Fatal flow error (invalid graph, step limit exceeded). The session is cancelled."""


@dataclass
class FlowExecutionContext:
    """Everything a node handler needs, rehydrated from the session row on resume."""

    workspace: Workspace
    flow: Flow
    graph: FlowGraph
    session: FlowSession
    contact: Contact
    channel: Channel
    conversation: Conversation | None
    incoming: IncomingMessage = field(default_factory=IncomingMessage)
    variables: dict = field(default_factory=dict)
    trigger_id: UUID | None = None

    @property
    def platform(self) -> str:
        return self.channel.platform


@dataclass(frozen=True)
class NodeResult:
    """
    What traversal does after a node.

    ``pause`` stops here with the session left active (a job or the next
    inbound message resumes it). ``complete`` ends the session. ``handle``
    selects the outgoing edge by its sourceHandle.
    """

    pause: bool = False
    complete: bool = False
    handle: str | None = None


CONTINUE = NodeResult()
PAUSE = NodeResult(pause=True)
COMPLETE = NodeResult(complete=True)


def follow(handle: str) -> NodeResult:
    return NodeResult(handle=handle)

"""
Typed flow graph definitions.

Nodes are a tagged union keyed on ``type``; every variant carries its own
``data`` model. Node types the engine does not know parse as
``PassthroughNode`` so editor-only nodes never break a published flow.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

from zernflow.db.enums import NodeType


class _NodeData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Message content
# =============================================================================


class QuickReply(_NodeData):
    title: str
    payload: str = ""


class MessageButton(_NodeData):
    title: str
    type: Literal["postback", "url"] = "postback"
    payload: str | None = None
    url: str | None = None


class CarouselElement(_NodeData):
    title: str
    subtitle: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")
    buttons: list[MessageButton] = Field(default_factory=list)


class Carousel(_NodeData):
    elements: list[CarouselElement] = Field(default_factory=list)


class MessageContent(_NodeData):
    text: str = ""
    image_url: str | None = Field(default=None, alias="imageUrl")
    quick_replies: list[QuickReply] = Field(default_factory=list, alias="quickReplies")
    buttons: list[MessageButton] = Field(default_factory=list)
    carousel: Carousel | None = None


# =============================================================================
# Node data
# =============================================================================


class SendMessageData(_NodeData):
    messages: list[MessageContent] = Field(default_factory=list)


class ConditionItem(_NodeData):
    field: str
    operator: Literal["equals", "not_equals", "contains", "exists", "gt", "lt"] = "equals"
    value: str = ""


class ConditionData(_NodeData):
    conditions: list[ConditionItem] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"


class DelayData(_NodeData):
    duration: float = 0
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"


class TagData(_NodeData):
    tag_name: str = Field(alias="tagName")


class SetFieldData(_NodeData):
    field_slug: str = Field(alias="fieldSlug")
    value: str = ""


class HttpRequestData(_NodeData):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    response_variable: str | None = Field(default=None, alias="responseVariable")


class GoToFlowData(_NodeData):
    flow_id: str = Field(alias="flowId")
    return_after: bool = Field(default=False, alias="returnAfter")


class HumanTakeoverData(_NodeData):
    message: str | None = None


class CommentReplyData(_NodeData):
    text: str = ""


class PrivateReplyData(_NodeData):
    text: str = ""
    image_url: str | None = Field(default=None, alias="imageUrl")


class SplitPath(_NodeData):
    name: str
    weight: float = 1


class ABSplitData(_NodeData):
    paths: list[SplitPath] = Field(default_factory=list)


class SmartDelayData(_NodeData):
    """Wait for the contact's next message, optionally giving up after a timeout."""

    timeout: float | None = None
    timeout_unit: Literal["minutes", "hours", "days"] = Field(default="hours", alias="timeoutUnit")
    save_as: str | None = Field(default=None, alias="saveAs")


class AIResponseData(_NodeData):
    system_prompt: str = Field(
        default="You are a helpful customer support agent.", alias="systemPrompt"
    )
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = Field(default=500, alias="maxTokens")
    context_messages: int = Field(default=10, alias="contextMessages")


class EnrollSequenceData(_NodeData):
    sequence_id: str = Field(alias="sequenceId")


class EmptyData(_NodeData):
    pass


# =============================================================================
# Nodes
# =============================================================================


class _BaseNode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class TriggerNode(_BaseNode):
    type: Literal["trigger"]
    data: EmptyData = Field(default_factory=EmptyData)


class SendMessageNode(_BaseNode):
    type: Literal["sendMessage"]
    data: SendMessageData = Field(default_factory=SendMessageData)


class ConditionNode(_BaseNode):
    type: Literal["condition"]
    data: ConditionData = Field(default_factory=ConditionData)


class DelayNode(_BaseNode):
    type: Literal["delay"]
    data: DelayData = Field(default_factory=DelayData)


class AddTagNode(_BaseNode):
    type: Literal["addTag"]
    data: TagData


class RemoveTagNode(_BaseNode):
    type: Literal["removeTag"]
    data: TagData


class SetCustomFieldNode(_BaseNode):
    type: Literal["setCustomField"]
    data: SetFieldData


class HttpRequestNode(_BaseNode):
    type: Literal["httpRequest"]
    data: HttpRequestData


class GoToFlowNode(_BaseNode):
    type: Literal["goToFlow"]
    data: GoToFlowData


class HumanTakeoverNode(_BaseNode):
    type: Literal["humanTakeover"]
    data: HumanTakeoverData = Field(default_factory=HumanTakeoverData)


class SubscribeNode(_BaseNode):
    type: Literal["subscribe"]
    data: EmptyData = Field(default_factory=EmptyData)


class UnsubscribeNode(_BaseNode):
    type: Literal["unsubscribe"]
    data: EmptyData = Field(default_factory=EmptyData)


class CommentReplyNode(_BaseNode):
    type: Literal["commentReply"]
    data: CommentReplyData = Field(default_factory=CommentReplyData)


class PrivateReplyNode(_BaseNode):
    type: Literal["privateReply"]
    data: PrivateReplyData = Field(default_factory=PrivateReplyData)


class ABSplitNode(_BaseNode):
    type: Literal["abSplit"]
    data: ABSplitData = Field(default_factory=ABSplitData)


class SmartDelayNode(_BaseNode):
    type: Literal["smartDelay"]
    data: SmartDelayData = Field(default_factory=SmartDelayData)


class AIResponseNode(_BaseNode):
    type: Literal["aiResponse"]
    data: AIResponseData = Field(default_factory=AIResponseData)


class EnrollSequenceNode(_BaseNode):
    type: Literal["enrollSequence"]
    data: EnrollSequenceData


class PassthroughNode(_BaseNode):
    """Any node type the engine has no behaviour for."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


_KNOWN_NODE_TYPES = {member.value for member in NodeType}
_PASSTHROUGH = "passthrough"


def _node_tag(value: Any) -> str:
    node_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if node_type in _KNOWN_NODE_TYPES:
        return node_type
    return _PASSTHROUGH


FlowNode = Annotated[
    Union[
        Annotated[TriggerNode, Tag("trigger")],
        Annotated[SendMessageNode, Tag("sendMessage")],
        Annotated[ConditionNode, Tag("condition")],
        Annotated[DelayNode, Tag("delay")],
        Annotated[AddTagNode, Tag("addTag")],
        Annotated[RemoveTagNode, Tag("removeTag")],
        Annotated[SetCustomFieldNode, Tag("setCustomField")],
        Annotated[HttpRequestNode, Tag("httpRequest")],
        Annotated[GoToFlowNode, Tag("goToFlow")],
        Annotated[HumanTakeoverNode, Tag("humanTakeover")],
        Annotated[SubscribeNode, Tag("subscribe")],
        Annotated[UnsubscribeNode, Tag("unsubscribe")],
        Annotated[CommentReplyNode, Tag("commentReply")],
        Annotated[PrivateReplyNode, Tag("privateReply")],
        Annotated[ABSplitNode, Tag("abSplit")],
        Annotated[SmartDelayNode, Tag("smartDelay")],
        Annotated[AIResponseNode, Tag("aiResponse")],
        Annotated[EnrollSequenceNode, Tag("enrollSequence")],
        Annotated[PassthroughNode, Tag(_PASSTHROUGH)],
    ],
    Discriminator(_node_tag),
]


class FlowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = None
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")


class FlowGraph(BaseModel):
    """Parsed nodes and edges of one flow with lookup helpers."""

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str | None):
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_node(self):
        for node in self.nodes:
            if node.type == NodeType.TRIGGER.value:
                return node
        return None

    def next_node(self, node_id: str, handle: str | None = None):
        """
        Follow the outgoing edge of ``node_id``.

        With a handle, only the edge whose sourceHandle equals it is taken;
        otherwise the first outgoing edge wins.
        """
        for edge in self.edges:
            if edge.source != node_id:
                continue
            if handle is not None and edge.source_handle != handle:
                continue
            return self.get_node(edge.target)
        return None


def parse_flow_graph(nodes: list | None, edges: list | None) -> FlowGraph:
    return FlowGraph.model_validate({"nodes": nodes or [], "edges": edges or []})

"""Tests for flow graph parsing."""

from zernflow.schemas.flow import (
    GoToFlowNode,
    PassthroughNode,
    SendMessageNode,
    SmartDelayNode,
    parse_flow_graph,
)
from zernflow.utils import parse_iso_datetime


def test_known_nodes_parse_into_typed_models():
    graph = parse_flow_graph(
        [
            {"id": "t", "type": "trigger", "data": {}},
            {"id": "s", "type": "sendMessage", "data": {"messages": [{"text": "Hi", "quickReplies": []}]}},
            {"id": "g", "type": "goToFlow", "data": {"flowId": "abc", "returnAfter": True}},
            {"id": "w", "type": "smartDelay", "data": {"timeout": 2, "timeoutUnit": "days", "saveAs": "email"}},
        ],
        [],
    )

    assert isinstance(graph.get_node("s"), SendMessageNode)
    go_to = graph.get_node("g")
    assert isinstance(go_to, GoToFlowNode)
    assert go_to.data.flow_id == "abc"
    assert go_to.data.return_after is True
    wait = graph.get_node("w")
    assert isinstance(wait, SmartDelayNode)
    assert wait.data.timeout_unit == "days"
    assert wait.data.save_as == "email"
    assert graph.trigger_node().id == "t"


def test_unknown_node_type_is_passthrough():
    graph = parse_flow_graph([{"id": "n", "type": "stickyNote", "data": {"text": "todo"}}], [])

    node = graph.get_node("n")
    assert isinstance(node, PassthroughNode)
    assert node.type == "stickyNote"


def test_next_node_follows_handles():
    graph = parse_flow_graph(
        [
            {"id": "c", "type": "condition", "data": {}},
            {"id": "yes", "type": "trigger", "data": {}},
            {"id": "no", "type": "trigger", "data": {}},
        ],
        [
            {"source": "c", "target": "yes", "sourceHandle": "true"},
            {"source": "c", "target": "no", "sourceHandle": "false"},
        ],
    )

    assert graph.next_node("c", "false").id == "no"
    assert graph.next_node("c").id == "yes"
    assert graph.next_node("c", "timeout") is None
    assert graph.next_node("missing") is None


def test_parse_iso_datetime_variants():
    assert parse_iso_datetime("2026-10-19T10:00:00Z").hour == 10
    assert parse_iso_datetime("2026-10-19").tzinfo is not None
    assert parse_iso_datetime("1760868000").year == 2025
    assert parse_iso_datetime("not a date") is None
    assert parse_iso_datetime("") is None

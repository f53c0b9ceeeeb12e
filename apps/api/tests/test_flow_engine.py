"""Tests for flow traversal, pausing and resuming."""

import uuid
from datetime import timedelta

import pytest

from zernflow.db.enums import FlowSessionStatus, JobStatus, JobType, TriggerType
from zernflow.db.models import Conversation, FlowSession, ScheduledJob
from zernflow.services import contact_service, flow_engine, ingestion_service
from zernflow.services.flow_context import FlowExecutionError
from zernflow.utils import utcnow


@pytest.fixture
def contact_and_conversation(db, channel):
    contact, _ = ingestion_service.upsert_contact(db, channel, "user_1", "Jane Doe", "jane")
    conversation, _ = ingestion_service.upsert_conversation(db, channel, contact, "conv_1", "hi")
    db.commit()
    return contact, conversation


async def run(db, flow, channel, contact_and_conversation, **kwargs) -> FlowSession:
    contact, conversation = contact_and_conversation
    return await flow_engine.execute_flow(
        db, flow, contact=contact, channel=channel, conversation=conversation, **kwargs
    )


def _node(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "data": data}


def _edge(source, target, handle=None):
    edge = {"source": source, "target": target}
    if handle:
        edge["sourceHandle"] = handle
    return edge


def _send(node_id, text):
    return _node(node_id, "sendMessage", messages=[{"text": text}])


def _make_due(db, job: ScheduledJob, session: FlowSession | None = None) -> None:
    """Move a job (and the wait it ends) into the past."""
    job.run_at = utcnow() - timedelta(seconds=1)
    if session is not None:
        session.waiting_until = job.run_at
    db.commit()


# =============================================================================
# Messages and variables
# =============================================================================

@pytest.mark.asyncio
async def test_send_message_interpolates_variables(db, channel, provider, make_flow, contact_and_conversation):
    flow = make_flow(
        [_node("t", "trigger"), _send("s", "Hi {{first_name}} on {{platform}}, {{unknown}}")],
        [_edge("t", "s")],
    )

    session = await run(db, flow, channel, contact_and_conversation)

    assert provider.sent_texts == ["Hi Jane on instagram, {{unknown}}"]
    assert session.status == FlowSessionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_failed_send_is_recorded_and_flow_continues(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.db.models import Message

    provider.fail_sends = True
    flow = make_flow(
        [_node("t", "trigger"), _send("s", "Hello"), _node("tag", "addTag", tagName="reached")],
        [_edge("t", "s"), _edge("s", "tag")],
    )

    session = await run(db, flow, channel, contact_and_conversation)

    message = db.query(Message).filter(Message.sent_by_node_id == "s").one()
    assert message.status == "failed"
    assert "boom" in message.error_message
    contact, _ = contact_and_conversation
    assert "reached" in contact_service.get_tag_names(db, contact.id)
    assert session.status == FlowSessionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_set_custom_field_updates_contact_and_variables(db, workspace, channel, provider, make_flow, contact_and_conversation):
    from zernflow.db.models import CustomFieldDefinition

    db.add(CustomFieldDefinition(workspace_id=workspace.id, name="Plan", slug="plan"))
    db.commit()
    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("f", "setCustomField", fieldSlug="plan", value="pro-{{first_name}}"),
            _send("s", "Your plan: {{plan}}"),
        ],
        [_edge("t", "f"), _edge("f", "s")],
    )

    await run(db, flow, channel, contact_and_conversation)

    contact, _ = contact_and_conversation
    assert contact_service.get_custom_field_values(db, contact.id) == {"plan": "pro-Jane"}
    assert provider.sent_texts == ["Your plan: pro-Jane"]


@pytest.mark.asyncio
async def test_unknown_node_type_passes_through(db, channel, provider, make_flow, contact_and_conversation):
    flow = make_flow(
        [_node("t", "trigger"), _node("x", "stickyNote", text="editor only"), _send("s", "after")],
        [_edge("t", "x"), _edge("x", "s")],
    )

    await run(db, flow, channel, contact_and_conversation)

    assert provider.sent_texts == ["after"]


@pytest.mark.asyncio
async def test_draft_flow_cannot_run(db, channel, provider, make_flow, contact_and_conversation):
    flow = make_flow([_node("t", "trigger")], [], status="draft")

    with pytest.raises(FlowExecutionError):
        await run(db, flow, channel, contact_and_conversation)


# =============================================================================
# Branching
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("tagged,expected", [(True, "vip path"), (False, "regular path")])
async def test_condition_follows_true_or_false_edge(
    db, channel, provider, make_flow, contact_and_conversation, tagged, expected
):
    contact, _ = contact_and_conversation
    if tagged:
        contact_service.add_tag(db, contact, "vip")
        db.commit()
    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("c", "condition", conditions=[{"field": "tag:vip", "operator": "equals", "value": "true"}]),
            _send("yes", "vip path"),
            _send("no", "regular path"),
        ],
        [_edge("t", "c"), _edge("c", "yes", "true"), _edge("c", "no", "false")],
    )

    await run(db, flow, channel, contact_and_conversation)

    assert provider.sent_texts == [expected]


@pytest.mark.asyncio
@pytest.mark.parametrize("draw,expected", [(0.1, "variant a"), (0.9, "variant b")])
async def test_ab_split_picks_path_by_weight(
    db, channel, provider, make_flow, contact_and_conversation, monkeypatch, draw, expected
):
    from zernflow.services import flow_nodes

    monkeypatch.setattr(flow_nodes.random, "random", lambda: draw)
    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("ab", "abSplit", paths=[{"name": "a", "weight": 50}, {"name": "b", "weight": 50}]),
            _send("sa", "variant a"),
            _send("sb", "variant b"),
        ],
        [_edge("t", "ab"), _edge("ab", "sa", "a"), _edge("ab", "sb", "b")],
    )

    await run(db, flow, channel, contact_and_conversation)

    assert provider.sent_texts == [expected]


# =============================================================================
# Waiting
# =============================================================================

@pytest.mark.asyncio
async def test_delay_pauses_and_schedules_resume_job(db, channel, provider, make_flow, contact_and_conversation):
    flow = make_flow(
        [_node("t", "trigger"), _node("d", "delay", duration=2, unit="hours"), _send("s", "later")],
        [_edge("t", "d"), _edge("d", "s")],
    )
    before = utcnow()

    session = await run(db, flow, channel, contact_and_conversation)

    assert provider.sent == []
    assert session.status == FlowSessionStatus.ACTIVE.value
    assert session.current_node_id == "d"
    job = db.query(ScheduledJob).one()
    assert job.job_type == JobType.RESUME_FLOW.value
    assert job.status == JobStatus.PENDING.value
    assert job.payload["sessionId"] == str(session.id)
    assert job.payload["nodeId"] == "d"
    assert job.run_at >= before + timedelta(hours=2)
    assert job.run_at <= utcnow() + timedelta(hours=2)


@pytest.mark.asyncio
async def test_expired_delay_resumes_via_jobs_tick(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.services import tick_service

    flow = make_flow(
        [_node("t", "trigger"), _send("s1", "now"), _node("d", "delay", duration=0), _send("s2", "later")],
        [_edge("t", "s1"), _edge("s1", "d"), _edge("d", "s2")],
    )
    session = await run(db, flow, channel, contact_and_conversation)
    assert provider.sent_texts == ["now"]

    result = await tick_service.process_due_jobs(db)

    assert result["processed"] == 1
    assert provider.sent_texts == ["now", "later"]
    db.refresh(session)
    assert session.status == FlowSessionStatus.COMPLETED.value
    assert db.query(ScheduledJob).one().status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_resume_job_for_cancelled_session_is_a_noop(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.services import tick_service

    flow = make_flow(
        [_node("t", "trigger"), _node("d", "delay", duration=0), _send("s", "never")],
        [_edge("t", "d"), _edge("d", "s")],
    )
    session = await run(db, flow, channel, contact_and_conversation)
    contact, _ = contact_and_conversation
    flow_engine.cancel_contact_sessions(db, contact.id, "test")
    db.commit()

    result = await tick_service.process_due_jobs(db)

    assert result["processed"] == 1
    assert provider.sent == []


@pytest.mark.asyncio
async def test_smart_delay_resumes_on_next_message(db, channel, ingest, provider, make_flow, make_trigger):
    flow = make_flow(
        [
            _node("t", "trigger"),
            _send("ask", "What is your email?"),
            _node("w", "smartDelay", saveAs="email"),
            _send("thanks", "Got {{email}}"),
        ],
        [_edge("t", "ask"), _edge("ask", "w"), _edge("w", "thanks", "reply")],
    )
    make_trigger(flow, TriggerType.KEYWORD.value, {"keywords": ["signup"]})

    await ingest(message_id="m1", text="signup")
    session = db.query(FlowSession).one()
    assert session.waiting_for_input is True

    result = await ingest(message_id="m2", text="jane@example.com")

    assert result.flow_id == str(flow.id)
    assert provider.sent_texts == ["What is your email?", "Got jane@example.com"]
    db.refresh(session)
    assert session.status == FlowSessionStatus.COMPLETED.value
    assert session.variables["email"] == "jane@example.com"


@pytest.mark.asyncio
async def test_smart_delay_timeout_follows_timeout_edge(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.services import tick_service

    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("w", "smartDelay", timeout=1, timeoutUnit="hours"),
            _send("reply", "thanks"),
            _send("late", "Still there?"),
        ],
        [_edge("t", "w"), _edge("w", "reply", "reply"), _edge("w", "late", "timeout")],
    )
    session = await run(db, flow, channel, contact_and_conversation)
    job = db.query(ScheduledJob).one()
    assert job.payload["reason"] == "timeout"
    assert job.run_at > utcnow() + timedelta(minutes=59)

    _make_due(db, job, session)
    await tick_service.process_due_jobs(db)

    assert provider.sent_texts == ["Still there?"]
    db.refresh(session)
    assert session.status == FlowSessionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_smart_delay_loop_back_supersedes_earlier_timeout(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.schemas.webhook import IncomingMessage
    from zernflow.services import tick_service

    flow = make_flow(
        [
            _node("t", "trigger"),
            _send("ask", "email?"),
            _node("w", "smartDelay", timeout=1, timeoutUnit="hours"),
            _send("again", "again"),
            _send("bye", "timed out"),
        ],
        [
            _edge("t", "ask"),
            _edge("ask", "w"),
            _edge("w", "again", "reply"),
            _edge("again", "w"),
            _edge("w", "bye", "timeout"),
        ],
    )
    session = await run(db, flow, channel, contact_and_conversation)
    first_job = db.query(ScheduledJob).one()

    await flow_engine.resume_session(db, session, incoming=IncomingMessage(text="not an email"))

    assert provider.sent_texts == ["email?", "again"]
    db.refresh(first_job)
    assert first_job.status == JobStatus.CANCELLED.value
    pending = db.query(ScheduledJob).filter(ScheduledJob.status == JobStatus.PENDING.value).all()
    assert [job.id for job in pending] == [session.resume_job_id]

    # Even if the superseded job were picked up, it must not end the new wait
    first_job.status = JobStatus.PENDING.value
    first_job.run_at = utcnow() - timedelta(seconds=1)
    db.commit()
    await tick_service.process_due_jobs(db)

    assert provider.sent_texts == ["email?", "again"]
    db.refresh(session)
    assert session.status == FlowSessionStatus.ACTIVE.value
    assert session.waiting_for_input is True

    _make_due(db, pending[0], session)
    await tick_service.process_due_jobs(db)

    assert provider.sent_texts == ["email?", "again", "timed out"]
    db.refresh(session)
    assert session.status == FlowSessionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_reply_cancels_pending_timeout_job(db, channel, provider, make_flow, contact_and_conversation):
    from zernflow.schemas.webhook import IncomingMessage

    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("w", "smartDelay", timeout=1, timeoutUnit="hours"),
            _send("reply", "thanks"),
        ],
        [_edge("t", "w"), _edge("w", "reply", "reply")],
    )
    session = await run(db, flow, channel, contact_and_conversation)

    await flow_engine.resume_session(db, session, incoming=IncomingMessage(text="hi"))

    assert provider.sent_texts == ["thanks"]
    assert db.query(ScheduledJob).one().status == JobStatus.CANCELLED.value
    assert session.resume_job_id is None


# =============================================================================
# Sub-flows and limits
# =============================================================================

@pytest.mark.asyncio
async def test_go_to_flow_with_return_resumes_parent(db, channel, provider, make_flow, contact_and_conversation):
    child = make_flow(
        [_node("t", "trigger"), _send("c", "in child")],
        [_edge("t", "c")],
        name="Child",
    )
    parent = make_flow(
        [
            _node("t", "trigger"),
            _node("go", "goToFlow", flowId=str(child.id), returnAfter=True),
            _send("p", "back in parent"),
        ],
        [_edge("t", "go"), _edge("go", "p")],
        name="Parent",
    )

    parent_session = await run(db, parent, channel, contact_and_conversation)

    assert provider.sent_texts == ["in child", "back in parent"]
    db.refresh(parent_session)
    assert parent_session.status == FlowSessionStatus.COMPLETED.value
    child_session = db.query(FlowSession).filter(FlowSession.flow_id == child.id).one()
    assert child_session.status == FlowSessionStatus.COMPLETED.value
    assert child_session.flow_stack[0]["sessionId"] == str(parent_session.id)


@pytest.mark.asyncio
async def test_go_to_flow_without_return_hands_off(db, channel, provider, make_flow, contact_and_conversation):
    child = make_flow([_node("t", "trigger"), _send("c", "in child")], [_edge("t", "c")])
    parent = make_flow(
        [
            _node("t", "trigger"),
            _node("go", "goToFlow", flowId=str(child.id)),
            _send("p", "never"),
        ],
        [_edge("t", "go"), _edge("go", "p")],
    )

    await run(db, parent, channel, contact_and_conversation)

    assert provider.sent_texts == ["in child"]


@pytest.mark.asyncio
async def test_cycle_hits_step_cap_and_cancels_session(db, channel, provider, make_flow, contact_and_conversation):
    flow = make_flow(
        [
            _node("t", "trigger"),
            _node("a", "addTag", tagName="loop"),
            _node("b", "removeTag", tagName="loop"),
        ],
        [_edge("t", "a"), _edge("a", "b"), _edge("b", "a")],
    )

    with pytest.raises(FlowExecutionError):
        await run(db, flow, channel, contact_and_conversation)

    session = db.query(FlowSession).one()
    assert session.status == FlowSessionStatus.CANCELLED.value
    assert "50 steps" in session.error


@pytest.mark.asyncio
async def test_human_takeover_pauses_automation(db, channel, ingest, provider, make_flow, make_trigger, text_flow):
    takeover = make_flow(
        [_node("t", "trigger"), _node("h", "humanTakeover", message="Connecting you to a human")],
        [_edge("t", "h")],
    )
    make_trigger(takeover, TriggerType.KEYWORD.value, {"keywords": ["agent"]})
    make_trigger(text_flow("bot answer"), TriggerType.KEYWORD.value, {"keywords": ["price"]})

    first = await ingest(message_id="m1", text="agent please")
    await ingest(message_id="m2", text="price?")

    assert provider.sent_texts == ["Connecting you to a human"]
    conversation = db.get(Conversation, uuid.UUID(first.conversation_id))
    assert conversation.is_automation_paused is True

"""Tests for outbound webhook delivery."""

import asyncio
import json
import time
from types import SimpleNamespace

import pytest

from zernflow.core.security import compute_signature, verify_signature
from zernflow.db.enums import JobType, WebhookEventType
from zernflow.db.models import ScheduledJob, WebhookEndpoint
from zernflow.services import tick_service, webhook_dispatcher


@pytest.fixture
def endpoint(db, workspace):
    row = WebhookEndpoint(
        workspace_id=workspace.id,
        url="https://hooks.example.com/zernflow?token=abc",
        events=[WebhookEventType.MESSAGE_RECEIVED.value],
        secret="endpoint-secret",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def deliveries(monkeypatch):
    """Replace the HTTP call; set ``deliveries.succeed`` to control the outcome."""

    recorder = SimpleNamespace(succeed=True, calls=[])

    async def fake_deliver(client, url, body, headers):
        recorder.calls.append({"url": url, "body": body, "headers": headers})
        return recorder.succeed

    monkeypatch.setattr(webhook_dispatcher, "_deliver", fake_deliver)
    return recorder


def test_payload_and_signature_header():
    body = webhook_dispatcher.build_payload(WebhookEventType.TAG_ADDED, {"tag": "vip"})
    headers = webhook_dispatcher.build_headers(body, "s3cret")

    decoded = json.loads(body)
    assert decoded["event"] == "tag.added"
    assert decoded["data"] == {"tag": "vip"}
    assert "timestamp" in decoded
    assert headers["X-Zernflow-Signature"] == compute_signature("s3cret", body)
    assert verify_signature("s3cret", body, headers["X-Zernflow-Signature"])
    assert "X-Zernflow-Signature" not in webhook_dispatcher.build_headers(body, None)


# =============================================================================
# Queueing
# =============================================================================

@pytest.mark.asyncio
async def test_ingest_queues_events_without_posting(db, channel, ingest, provider, endpoint, deliveries):
    await ingest(text="hello there")

    assert deliveries.calls == []
    # contact.created and conversation.opened have no subscriber
    job = db.query(ScheduledJob).filter(ScheduledJob.job_type == JobType.DELIVER_WEBHOOK.value).one()
    assert job.payload["event"] == "message.received"
    assert job.payload["endpointIds"] == [str(endpoint.id)]


def test_unsubscribed_event_is_not_queued(db, workspace, endpoint):
    job = webhook_dispatcher.dispatch_event(db, workspace.id, WebhookEventType.TAG_ADDED, {"tag": "vip"})

    assert job is None
    assert db.query(ScheduledJob).count() == 0


# =============================================================================
# Delivery
# =============================================================================

@pytest.mark.asyncio
async def test_jobs_tick_delivers_signed_event(db, channel, ingest, provider, endpoint, deliveries):
    await ingest(text="hello there")

    result = await tick_service.process_due_jobs(db)

    assert result["processed"] == 1
    assert len(deliveries.calls) == 1
    call = deliveries.calls[0]
    payload = json.loads(call["body"])
    assert payload["event"] == "message.received"
    assert payload["data"]["text"] == "hello there"
    assert call["headers"]["X-Zernflow-Signature"] == compute_signature("endpoint-secret", call["body"])


@pytest.mark.asyncio
async def test_slow_endpoint_does_not_hold_up_ingestion(db, channel, ingest, provider, endpoint, monkeypatch):
    async def slow_deliver(client, url, body, headers):
        await asyncio.sleep(0.5)
        return True

    monkeypatch.setattr(webhook_dispatcher, "_deliver", slow_deliver)
    endpoint.events = [
        WebhookEventType.CONTACT_CREATED.value,
        WebhookEventType.CONVERSATION_OPENED.value,
        WebhookEventType.MESSAGE_RECEIVED.value,
    ]
    db.commit()

    started = time.monotonic()
    await ingest(text="hello there")

    assert time.monotonic() - started < 0.5
    assert db.query(ScheduledJob).filter(ScheduledJob.job_type == JobType.DELIVER_WEBHOOK.value).count() == 3


@pytest.mark.asyncio
async def test_failures_disable_endpoint_at_ceiling(db, workspace, endpoint, deliveries, monkeypatch):
    from zernflow.core.config import settings

    monkeypatch.setattr(settings, "OUTBOUND_WEBHOOK_MAX_FAILURES", 3)
    deliveries.succeed = False

    for _ in range(3):
        result = await webhook_dispatcher.deliver_event(db, workspace.id, WebhookEventType.MESSAGE_RECEIVED, {})
        assert result == {"delivered": 0, "failed": 1}

    db.refresh(endpoint)
    assert endpoint.failure_count == 3
    assert endpoint.is_active is False

    assert webhook_dispatcher.dispatch_event(db, workspace.id, WebhookEventType.MESSAGE_RECEIVED, {}) is None
    await webhook_dispatcher.deliver_event(db, workspace.id, WebhookEventType.MESSAGE_RECEIVED, {})
    assert len(deliveries.calls) == 3


@pytest.mark.asyncio
async def test_success_resets_failure_count(db, workspace, endpoint, deliveries):
    deliveries.succeed = False
    await webhook_dispatcher.deliver_event(db, workspace.id, WebhookEventType.MESSAGE_RECEIVED, {})
    deliveries.succeed = True
    await webhook_dispatcher.deliver_event(db, workspace.id, WebhookEventType.MESSAGE_RECEIVED, {})

    db.refresh(endpoint)
    assert endpoint.failure_count == 0
    assert endpoint.last_triggered_at is not None
    assert endpoint.is_active is True


@pytest.mark.asyncio
async def test_endpoint_subscribed_after_the_event_is_skipped(db, workspace, endpoint, deliveries):
    late_joiner = WebhookEndpoint(
        workspace_id=workspace.id,
        url="https://late.example.com/hook",
        events=[WebhookEventType.MESSAGE_RECEIVED.value],
    )
    db.add(late_joiner)
    db.commit()

    await webhook_dispatcher.deliver_event(
        db,
        workspace.id,
        WebhookEventType.MESSAGE_RECEIVED,
        {},
        endpoint_ids=[endpoint.id],
    )

    assert [call["url"] for call in deliveries.calls] == [endpoint.url]

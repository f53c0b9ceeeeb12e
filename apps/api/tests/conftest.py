"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema created and dropped per test
- Workspace / channel / member fixtures
- A recording messaging provider patched in place of the real one
- HTTPX AsyncClient bound to the same session
"""
import os
import uuid
from typing import AsyncGenerator, Generator

# Must be set before anything imports zernflow settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["FERNET_KEY"] = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from zernflow.core.deps import get_db
from zernflow.db.base import Base
from zernflow.db.enums import AutoAssignMode, FlowStatus, Platform
from zernflow.db.models import Channel, Flow, Trigger, Workspace, WorkspaceMember
from zernflow.db.session import SessionLocal, engine
from zernflow.main import app
from zernflow.services import messaging_provider
from zernflow.services.messaging_provider import MessagingProvider, ProviderError


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh schema per test; app code is free to commit."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def workspace(db: Session) -> Workspace:
    ws = Workspace(
        id=uuid.uuid4(),
        name="Test Workspace",
        late_api_key_encrypted="late-test-key",
        auto_assign_mode=AutoAssignMode.MANUAL.value,
        global_keywords=[],
    )
    db.add(ws)
    db.commit()
    return ws


@pytest.fixture(scope="function")
def channel(db: Session, workspace: Workspace) -> Channel:
    ch = Channel(
        id=uuid.uuid4(),
        workspace_id=workspace.id,
        platform=Platform.INSTAGRAM.value,
        late_account_id="acc_test",
        username="testbrand",
        is_active=True,
    )
    db.add(ch)
    db.commit()
    return ch


@pytest.fixture(scope="function")
def members(db: Session, workspace: Workspace) -> list[WorkspaceMember]:
    from datetime import timedelta

    from zernflow.utils import utcnow

    base = utcnow()
    rows = [
        WorkspaceMember(
            workspace_id=workspace.id,
            user_id=uuid.uuid4(),
            created_at=base + timedelta(seconds=i),
        )
        for i in range(3)
    ]
    db.add_all(rows)
    db.commit()
    return rows


# =============================================================================
# Messaging provider
# =============================================================================

class FakeProvider(MessagingProvider):
    """Records every call; ``fail_sends`` makes send_message raise ProviderError."""

    def __init__(self):
        self.sent: list[dict] = []
        self.comment_replies: list[dict] = []
        self.private_replies: list[dict] = []
        self.posts: list[dict] = []
        self.comments: dict[str, list[dict]] = {}
        self.fail_sends = False

    async def send_message(self, account_id, conversation_id, message):
        if self.fail_sends:
            raise ProviderError("Late API 500: boom", status_code=500)
        self.sent.append(
            {"account_id": account_id, "conversation_id": conversation_id, "message": message}
        )
        return f"pm_{len(self.sent)}"

    async def list_posts(self, account_id):
        return list(self.posts)

    async def list_comments(self, account_id, post_id):
        return list(self.comments.get(post_id, []))

    async def reply_to_comment(self, account_id, post_id, comment_id, text):
        self.comment_replies.append({"post_id": post_id, "comment_id": comment_id, "text": text})

    async def send_private_reply(self, account_id, post_id, comment_id, text):
        self.private_replies.append({"post_id": post_id, "comment_id": comment_id, "text": text})

    async def list_accounts(self):
        return []

    async def get_connect_url(self, platform, profile_id, redirect_url):
        return f"https://connect.test/{platform}"

    @property
    def sent_texts(self) -> list[str]:
        return [entry["message"].text for entry in self.sent]


@pytest.fixture(scope="function")
def provider(monkeypatch) -> FakeProvider:
    fake = FakeProvider()

    def _get_provider(workspace):
        if not getattr(workspace, "late_api_key_encrypted", None):
            return None
        return fake

    monkeypatch.setattr(messaging_provider, "get_provider", _get_provider)
    return fake


# =============================================================================
# Builders
# =============================================================================

@pytest.fixture(scope="function")
def make_flow(db: Session, workspace: Workspace):
    """Create a flow in the test workspace: ``make_flow(nodes, edges, status=...)``."""

    def _make(nodes, edges, status=FlowStatus.PUBLISHED.value, name="Test flow", workspace_id=None):
        flow = Flow(
            workspace_id=workspace_id or workspace.id,
            name=name,
            status=status,
            nodes=nodes,
            edges=edges,
        )
        db.add(flow)
        db.commit()
        return flow

    return _make


@pytest.fixture(scope="function")
def make_trigger(db: Session):
    """Attach a trigger: ``make_trigger(flow, "keyword", {...}, channel_id=None, priority=0)``."""

    def _make(flow, trigger_type, config=None, channel_id=None, priority=0):
        trigger = Trigger(
            flow_id=flow.id,
            channel_id=channel_id,
            type=trigger_type,
            config=config or {},
            priority=priority,
            is_active=True,
        )
        db.add(trigger)
        db.commit()
        return trigger

    return _make


def text_flow_graph(*texts: str) -> tuple[list[dict], list[dict]]:
    nodes = [
        {"id": "t", "type": "trigger", "data": {}},
        {"id": "s", "type": "sendMessage", "data": {"messages": [{"text": t} for t in texts]}},
    ]
    edges = [{"id": "e1", "source": "t", "target": "s"}]
    return nodes, edges


@pytest.fixture(scope="function")
def text_flow(make_flow):
    """Published trigger -> sendMessage flow: ``text_flow("Hi", "there")``."""

    def _make(*texts, **kwargs):
        nodes, edges = text_flow_graph(*texts)
        return make_flow(nodes, edges, **kwargs)

    return _make


def build_inbound_payload(
    message_id: str = "msg_1",
    text: str | None = "hello",
    sender_id: str = "user_1",
    sender_name: str | None = "Jane Doe",
    account_id: str = "acc_test",
    conversation_id: str = "conv_1",
    metadata: dict | None = None,
    direction: str = "inbound",
    event: str = "message.received",
) -> dict:
    return {
        "event": event,
        "message": {
            "id": message_id,
            "conversationId": conversation_id,
            "platform": "instagram",
            "platformMessageId": f"ig_{message_id}",
            "direction": direction,
            "text": text,
            "attachments": [],
            "sender": {"id": sender_id, "name": sender_name, "username": "jane"},
            "sentAt": "2026-10-19T10:00:00Z",
        },
        "conversation": {"id": conversation_id},
        "account": {"id": account_id, "platform": "instagram", "username": "testbrand"},
        "metadata": metadata or {},
        "timestamp": "2026-10-19T10:00:00Z",
    }


@pytest.fixture(scope="function")
def inbound_payload():
    """``message.received`` delivery builder (raw dict as the provider posts it)."""
    return build_inbound_payload


@pytest.fixture(scope="function")
def ingest(db: Session, channel: Channel, inbound_payload):
    """Run the ingestion pipeline directly: ``await ingest(text="hi", message_id="m1")``."""
    from zernflow.schemas.webhook import InboundWebhookPayload
    from zernflow.services import ingestion_service

    async def _ingest(target_channel=None, **kwargs):
        payload = InboundWebhookPayload.model_validate(inbound_payload(**kwargs))
        return await ingestion_service.process_inbound(db, target_channel or channel, payload)

    return _ingest


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient for the public and internal endpoints, sharing the test session."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()

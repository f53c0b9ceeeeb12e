"""Tests for the polling worker and its HTTP health wrapper."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from zernflow import worker, worker_service
from zernflow.services import tick_service


# =============================================================================
# run_ticks
# =============================================================================

@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_others(monkeypatch):
    async def ok(db):
        return {"processed": 1}

    async def broken(db):
        raise RuntimeError("tick exploded")

    monkeypatch.setattr(tick_service, "TICKS", {"jobs": broken, "sequences": ok})

    results = await worker.run_ticks()

    assert results == {"sequences": {"processed": 1}}


# =============================================================================
# Health endpoint
# =============================================================================

def test_health_reports_running_loop(monkeypatch):
    async def idle_loop():
        await asyncio.Event().wait()

    monkeypatch.setattr(worker, "worker_loop", idle_loop)
    monkeypatch.setattr(worker, "last_tick_at", None)

    with TestClient(worker_service.app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "last_tick_at": None}


def test_health_fails_when_loop_has_stopped(monkeypatch):
    async def dead_loop():
        return None

    monkeypatch.setattr(worker, "worker_loop", dead_loop)

    with TestClient(worker_service.app) as client:
        # let the finished task settle on the portal loop
        client.portal.call(asyncio.sleep, 0.05)
        response = client.get("/health")

    assert response.status_code == 503
    assert response.json() == {"status": "stopped"}

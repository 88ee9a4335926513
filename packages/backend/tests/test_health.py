"""Health endpoint tests."""

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Health endpoint should return server status and version."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["server"] == "ok"
    assert data["status"] == "healthy"
    assert data["postgres"] == "ok"
    assert data["redis"] == "ok"
    assert "version" in data


@pytest.mark.asyncio
async def test_health_reports_realtime_counters(client):
    resp = await client.get("/api/v1/health")
    realtime = resp.json()["realtime"]
    assert realtime["streams"] == 0
    assert realtime["bridge_running"] is True


@pytest.mark.asyncio
async def test_health_degraded_when_database_down(client, store):
    store.healthy = False
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["postgres"].startswith("error")


@pytest.mark.asyncio
async def test_health_degraded_when_broker_down(client, hub):
    await hub.broker.close()
    resp = await client.get("/api/v1/health")
    assert resp.json()["redis"].startswith("error")
    assert resp.json()["status"] == "degraded"

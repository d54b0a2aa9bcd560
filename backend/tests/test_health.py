from contextlib import asynccontextmanager

import pytest


@pytest.mark.anyio("asyncio")
async def test_healthz(async_client):
    resp = await async_client.get("/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload.get("ok") is True
    assert resp.headers.get("x-request-id")


@pytest.mark.anyio("asyncio")
async def test_request_id_is_echoed(async_client):
    resp = await async_client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


@pytest.mark.anyio("asyncio")
async def test_readyz(async_client, monkeypatch):
    class _Cursor:
        async def execute(self, query):
            self.query = query

        async def fetchone(self):
            return (1,)

    @asynccontextmanager
    async def _conn():
        yield _Cursor()

    monkeypatch.setattr("app.main.get_conn", _conn)
    resp = await async_client.get("/readyz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload.get("database") == "ready"


@pytest.mark.anyio("asyncio")
async def test_readyz_handles_db_failure(async_client, monkeypatch):
    @asynccontextmanager
    async def _broken_conn():
        raise RuntimeError("db down")
        yield

    monkeypatch.setattr("app.main.get_conn", _broken_conn)
    resp = await async_client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json() == {"error": "database unavailable"}


@pytest.mark.anyio("asyncio")
async def test_metrics_exposes_subscription_counters(async_client):
    resp = await async_client.get("/metrics")
    assert resp.status_code == 200
    assert "billing_sync_failures_total" in resp.text
    assert "stripe_webhook_events_total" in resp.text

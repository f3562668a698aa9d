from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from crmrelay.apps.api.main import create_app
from crmrelay.core.config import get_settings
from crmrelay.tests.utils.fakes import FakeChatSink, crm_event, make_runtime, seed_queue_items, seed_tenant


@pytest.fixture
async def client(session_factory, relay_settings):
    runtime = make_runtime(session_factory, relay_settings, sink=FakeChatSink())
    app = create_app(runtime=runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.mark.asyncio
async def test_health_reports_runtime(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "queue_configured": False, "dedup_entries": 0}
    assert body["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_webhook_accepts_event(client, session_factory) -> None:
    await seed_tenant(session_factory)

    response = await client.post("/v1/webhooks/crm", params={"priority": 2}, json=crm_event(value=1200))

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["success"] is True
    assert data["tier"] == "direct"
    assert data["state"] == "tier2_direct_ok"
    assert data["notifications_sent"] == 1
    assert data["delivery_id"].startswith("del_")


@pytest.mark.asyncio
async def test_webhook_rejects_event_without_name(client) -> None:
    response = await client.post("/v1/webhooks/crm", json={"company_id": "1001"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_webhook_rejects_out_of_range_priority(client) -> None:
    response = await client.post("/v1/webhooks/crm", params={"priority": 11}, json=crm_event())
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_ops_health_check(client) -> None:
    response = await client.get("/v1/ops/health-check")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["healthy"] is True
    assert len(data["checks_run"]) == 5


@pytest.mark.asyncio
async def test_ops_retry_failed(client, session_factory) -> None:
    await seed_tenant(session_factory)
    await seed_queue_items(session_factory, count=2, status="failed")

    response = await client.post("/v1/ops/retry-failed", params={"limit": 1})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["attempted"] == 1
    assert data["completed"] == 1


@pytest.mark.asyncio
async def test_ops_retry_failed_limit_is_bounded(client) -> None:
    response = await client.post("/v1/ops/retry-failed", params={"limit": 500})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_ops_emergency_heal(client) -> None:
    response = await client.post("/v1/ops/emergency-heal")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["stale_locks_cleared"] == 0
    assert data["batch_pages"] == 1


@pytest.mark.asyncio
async def test_ops_delivery_stats(client, session_factory) -> None:
    await seed_tenant(session_factory)
    await client.post("/v1/webhooks/crm", json=crm_event())

    response = await client.get("/v1/ops/delivery-stats", params={"hours": 6})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["window_hours"] == 6
    assert data["summary"]["successful"] == 1
    assert data["queue"]["pending"] == 0


@pytest.mark.asyncio
async def test_ops_tenant_stats_and_metrics(client, session_factory) -> None:
    await seed_tenant(session_factory, company_id="5005")
    await seed_tenant(session_factory, company_id="5005")

    tenants = (await client.get("/v1/ops/tenants/stats")).json()["data"]
    metrics = (await client.get("/v1/ops/metrics")).json()["data"]

    assert tenants["total"] == 2
    assert tenants["duplicate_company_ids"] == 1
    assert metrics["counters"]["http_requests_2xx_total"] >= 1
    assert "external_calls" in metrics


@pytest.mark.asyncio
async def test_ops_routes_require_token_when_configured(client, monkeypatch) -> None:
    monkeypatch.setenv("OPS_API_TOKEN", "s3cret")
    get_settings.cache_clear()

    missing = await client.get("/v1/ops/metrics")
    wrong = await client.get("/v1/ops/metrics", headers={"Authorization": "Bearer nope"})
    ok = await client.get("/v1/ops/metrics", headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert wrong.status_code == 401
    assert ok.status_code == 200

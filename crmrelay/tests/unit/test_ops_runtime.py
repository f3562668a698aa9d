from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crmrelay.apps.api.main import create_app
from crmrelay.services import runtime as relay_ops
from crmrelay.tests.utils.fakes import make_runtime


@pytest.fixture
async def schemaless_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # A reachable database without tables: every query fails in the store.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
async def test_ops_functions_report_store_failures(schemaless_factory, relay_settings) -> None:
    runtime = make_runtime(schemaless_factory, relay_settings)

    reports = {
        "emergency_heal": await relay_ops.run_emergency_heal(runtime),
        "retry_failed": await relay_ops.retry_failed(limit=5, runtime=runtime),
        "delivery_stats": await relay_ops.get_delivery_stats(hours=1, runtime=runtime),
    }

    for operation, report in reports.items():
        assert relay_ops.is_ops_failure(report)
        assert report["operation"] == operation
        assert "OperationalError" in report["error"]


@pytest.mark.asyncio
async def test_ops_functions_pass_through_successful_results(session_factory, relay_settings) -> None:
    runtime = make_runtime(session_factory, relay_settings)

    result = await relay_ops.retry_failed(limit=5, runtime=runtime)

    assert not relay_ops.is_ops_failure(result)
    assert result["attempted"] == 0


@pytest.mark.asyncio
async def test_ops_route_maps_failure_report_to_503(schemaless_factory, relay_settings) -> None:
    app = create_app(runtime=make_runtime(schemaless_factory, relay_settings))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        response = await http.post("/v1/ops/retry-failed")

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "OPS_OPERATION_FAILED"
    assert error["details"] == {"operation": "retry_failed"}

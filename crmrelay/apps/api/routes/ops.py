from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.apps.api.deps import get_db, get_relay_runtime, require_ops_token
from crmrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmrelay.apps.api.response import SuccessEnvelope, success_response
from crmrelay.services import runtime as relay_ops
from crmrelay.services.tenancy.admin import get_tenant_stats
from crmrelay.services.telemetry import counters_snapshot, external_call_summary


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_ops_token)],
)


class HealthCheckResponse(BaseModel):
    # Mirror HealthCheckReport.to_dict for operator dashboards.
    healthy: bool
    checked_at: str
    duration_ms: int
    checks_run: list[str]
    issues: list[dict[str, Any]]
    auto_fixes: list[dict[str, Any]]
    manual_actions: list[dict[str, Any]]


class EmergencyHealResponse(BaseModel):
    stale_locks_cleared: int
    failed_requeued: int
    batch_pages: int
    batch: dict[str, int]
    duration_ms: int


class RetryFailedResponse(BaseModel):
    attempted: int
    completed: int
    failed: int
    errors: int
    malformed: int
    skipped: int
    items: list[dict[str, Any]]


class DeliveryStatsResponse(BaseModel):
    window_hours: int
    since: str
    breakdown: list[dict[str, Any]]
    summary: dict[str, Any]
    queue: dict[str, int]


class RelayMetricsResponse(BaseModel):
    counters: dict[str, int]
    external_calls: dict[str, dict[str, Any]]


def _ops_result(result: dict[str, Any]) -> dict[str, Any]:
    # Failure reports from the ops layer become 503s in the standard error envelope.
    if relay_ops.is_ops_failure(result):
        raise HTTPException(
            status_code=503,
            detail={"code": "OPS_OPERATION_FAILED", "message": result["error"], "operation": result["operation"]},
        )
    return result


@router.get("/health-check", response_model=SuccessEnvelope[HealthCheckResponse])
async def health_check(request: Request) -> dict:
    # Run every self-healing check once and return the report.
    runtime = get_relay_runtime(request)
    report = await relay_ops.run_health_check(runtime)
    return success_response(request=request, data=HealthCheckResponse(**_ops_result(report)))


@router.post("/emergency-heal", response_model=SuccessEnvelope[EmergencyHealResponse])
async def emergency_heal(request: Request) -> dict:
    runtime = get_relay_runtime(request)
    result = await relay_ops.run_emergency_heal(runtime)
    return success_response(request=request, data=EmergencyHealResponse(**_ops_result(result)))


@router.post("/retry-failed", response_model=SuccessEnvelope[RetryFailedResponse])
async def retry_failed(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
) -> dict:
    runtime = get_relay_runtime(request)
    result = await relay_ops.retry_failed(limit=limit, runtime=runtime)
    return success_response(request=request, data=RetryFailedResponse(**_ops_result(result)))


@router.get("/delivery-stats", response_model=SuccessEnvelope[DeliveryStatsResponse])
async def delivery_stats(
    request: Request,
    hours: int = Query(default=24, ge=1, le=720),
) -> dict:
    runtime = get_relay_runtime(request)
    result = await relay_ops.get_delivery_stats(hours=hours, runtime=runtime)
    return success_response(request=request, data=DeliveryStatsResponse(**_ops_result(result)))


@router.get("/tenants/stats", response_model=SuccessEnvelope[dict[str, int]])
async def tenant_stats(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    stats = await get_tenant_stats(db)
    return success_response(request=request, data=stats)


@router.get("/metrics", response_model=SuccessEnvelope[RelayMetricsResponse])
async def relay_metrics(request: Request) -> dict:
    # Process-local counters; each API and worker process reports its own view.
    payload = RelayMetricsResponse(counters=counters_snapshot(), external_calls=external_call_summary())
    return success_response(request=request, data=payload)

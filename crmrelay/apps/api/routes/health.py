from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from crmrelay.apps.api.deps import get_relay_runtime
from crmrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmrelay.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    queue_configured: bool
    dedup_entries: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; dependency health is the self-healing report's job.
    runtime = get_relay_runtime(request)
    payload = HealthResponse(
        status="ok",
        queue_configured=runtime.queue is not None,
        dedup_entries=len(runtime.deduplicator),
    )
    return success_response(request=request, data=payload)

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel

from crmrelay.apps.api.deps import get_relay_runtime
from crmrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmrelay.apps.api.response import SuccessEnvelope, success_response
from crmrelay.domain.events import CrmEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class DeliveryAccepted(BaseModel):
    success: bool
    tier: str | None
    delivery_id: str
    state: str
    notifications_sent: int
    detail: dict[str, Any]


@router.post(
    "/crm",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[DeliveryAccepted],
)
async def receive_crm_event(
    request: Request,
    event: CrmEvent,
    priority: int | None = Query(default=None, ge=1, le=10),
    delay_ms: int = Query(default=0, ge=0, le=86_400_000),
) -> dict:
    # Acknowledge once the event is durable somewhere; delivery itself may still be pending.
    runtime = get_relay_runtime(request)
    outcome = await runtime.orchestrator.guarantee_delivery(event, priority=priority, delay_ms=delay_ms)
    logger.info(
        "crm_event_received delivery_id=%s event=%s company_id=%s tier=%s success=%s",
        outcome.delivery_id,
        event.event,
        event.company_id,
        outcome.tier.value if outcome.tier is not None else None,
        outcome.success,
    )
    return success_response(request=request, data=DeliveryAccepted(**outcome.to_dict()))

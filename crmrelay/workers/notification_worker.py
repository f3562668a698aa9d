from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from crmrelay.core.config import get_settings
from crmrelay.core.errors import MalformedPayloadError
from crmrelay.core.logging import configure_logging
from crmrelay.domain.events import parse_stored_event
from crmrelay.services.delivery.direct import DirectDeliveryResult
from crmrelay.services.delivery.queue import QueueHints
from crmrelay.services.resilience import backoff_delay_ms
from crmrelay.services.runtime import RelayRuntime, build_runtime

logger = logging.getLogger(__name__)


async def process_crm_event(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    # Consume one Tier 1 job: direct delivery with ARQ retries, then a batch row once attempts run out.
    runtime: RelayRuntime = ctx["runtime"]
    orchestrator = runtime.orchestrator
    delivery_id = str(payload.get("delivery_id") or ctx.get("job_id") or "")
    hints = QueueHints.from_dict(payload.get("hints"))
    job_try = int(ctx.get("job_try") or 1)
    # ARQ stops running a job past max_tries, so the fallback must trigger no later than that.
    max_attempts = max(1, min(hints.max_attempts, int(runtime.settings.queue_job_max_attempts)))
    started = time.monotonic()

    try:
        event = parse_stored_event(payload.get("event"))
    except MalformedPayloadError as exc:
        # Retrying cannot repair the payload; park it for an operator.
        outcome = await orchestrator.escalate_to_manual(
            payload.get("event") or payload,
            delivery_id=delivery_id,
            error=exc,
        )
        return {"status": "manual_recovery", "delivery_id": delivery_id, "detail": outcome.detail}

    context = {"company_id": event.company_id, "event_type": event.event}
    try:
        result = await asyncio.wait_for(
            runtime.pipeline.process(event, delivery_id=delivery_id),
            timeout=runtime.settings.direct_delivery_timeout_ms / 1000.0,
        )
    except Exception as exc:  # noqa: BLE001 - a crashed attempt is retried like a failed one.
        logger.exception("queue_job_attempt_crashed delivery_id=%s job_try=%s", delivery_id, job_try)
        result = DirectDeliveryResult.failed(f"{type(exc).__name__}: {exc}")
    context["tenant_id"] = result.tenant_id

    if result.success:
        await orchestrator.record_attempt(delivery_id, "queue", "success", context, result.to_dict(), started)
        return {"status": "delivered", "delivery_id": delivery_id, "notifications_sent": result.notifications_sent}

    if job_try < max_attempts:
        defer_ms = backoff_delay_ms(attempt=job_try, base_ms=hints.backoff_delay_ms, jitter=False)
        logger.warning(
            "queue_job_retry delivery_id=%s job_try=%s defer_ms=%s error=%s",
            delivery_id,
            job_try,
            defer_ms,
            result.error,
        )
        raise Retry(defer=defer_ms / 1000.0)

    await orchestrator.record_attempt(delivery_id, "queue", "failed", context, result.to_dict(), started)
    try:
        item = await orchestrator.schedule_batch(
            event,
            delivery_id=delivery_id,
            priority=hints.priority,
            tenant_id=result.tenant_id,
            error=result.error or f"{result.failures} send(s) failed after {job_try} attempts",
        )
    except Exception as exc:  # noqa: BLE001 - the event must still land somewhere durable.
        outcome = await orchestrator.escalate_to_manual(event, delivery_id=delivery_id, error=exc)
        return {"status": "manual_recovery", "delivery_id": delivery_id, "detail": outcome.detail}
    detail = {"queue_item_id": item.id, "scheduled_for": item.scheduled_for.isoformat()}
    await orchestrator.record_attempt(delivery_id, "batch", "queued_batch", context, detail, started)
    return {"status": "batch_scheduled", "delivery_id": delivery_id, **detail}


async def _scheduler_loop(runtime: RelayRuntime) -> None:
    # Sweep due batch rows and run self-healing on their own cadences while the worker is up.
    settings = runtime.settings
    sweep_interval_s = max(1, int(settings.batch_sweep_interval_s))
    healing_interval_s = max(1, int(settings.healing_interval_s))
    next_healing = time.monotonic() + healing_interval_s
    while True:
        try:
            await runtime.orchestrator.process_batch_queue()
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("batch sweep failed")
        if settings.healing_enabled and time.monotonic() >= next_healing:
            await runtime.monitor.run_self_healing()
            next_healing = time.monotonic() + healing_interval_s
        await asyncio.sleep(sweep_interval_s)


async def _startup(ctx: dict[str, Any]) -> None:
    # The worker never enqueues, so its runtime has no Tier 1 queue.
    configure_logging()
    runtime = build_runtime(use_queue=False)
    await runtime.start()
    ctx["runtime"] = runtime
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop(runtime))


async def _shutdown(ctx: dict[str, Any]) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.aclose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.relay_queue_name
    max_tries = max(1, int(settings.queue_job_max_attempts))
    functions = [process_crm_event]
    on_startup = _startup
    on_shutdown = _shutdown

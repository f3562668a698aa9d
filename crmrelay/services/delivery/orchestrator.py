from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmrelay.core.config import Settings, get_settings
from crmrelay.core.errors import MalformedPayloadError
from crmrelay.domain.events import CrmEvent, parse_stored_event
from crmrelay.domain.models import DeliveryQueueItem
from crmrelay.domain.state import (
    DeliveryState,
    DeliveryStateMachine,
    DeliveryTier,
    QueueStatus,
    new_delivery_id,
)
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.persistence.repos import delivery_queue as queue_repo
from crmrelay.services.delivery.critical_log import CriticalFailureLog
from crmrelay.services.delivery.direct import DirectDeliveryPipeline, DirectDeliveryResult
from crmrelay.services.delivery.queue import DeliveryQueue, QueueHints, build_job_payload
from crmrelay.services.maintenance import retry_ceiling
from crmrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    tier: DeliveryTier | None
    delivery_id: str
    state: DeliveryState
    detail: dict[str, Any] = field(default_factory=dict)
    notifications_sent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tier": self.tier.value if self.tier is not None else None,
            "delivery_id": self.delivery_id,
            "state": self.state.value,
            "detail": dict(self.detail),
            "notifications_sent": self.notifications_sent,
        }


@dataclass
class _TierAttempt:
    ok: bool
    detail: dict[str, Any]


def _event_context(raw: CrmEvent | Mapping[str, Any] | Any) -> dict[str, Any]:
    # Identity fields for log rows, readable even from payloads that failed validation.
    if isinstance(raw, CrmEvent):
        return {"company_id": raw.company_id, "event_type": raw.event}
    if isinstance(raw, Mapping):
        company = raw.get("company_id")
        event = raw.get("event")
        return {
            "company_id": None if company is None else str(company),
            "event_type": event if isinstance(event, str) else None,
        }
    return {"company_id": None, "event_type": None}


def _raw_payload(raw: CrmEvent | Mapping[str, Any] | Any) -> Any:
    if isinstance(raw, CrmEvent):
        return raw.to_payload()
    if isinstance(raw, Mapping):
        return dict(raw)
    return raw


class DeliveryOrchestrator:
    """Guarantee that every inbound event ends in a durable, accountable state.

    Tiers escalate strictly: queue, then direct send, then a scheduled batch
    row. Anything unexpected lands the raw event in manual recovery, and when
    the database refuses even that, the critical-failures file gets it.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: DirectDeliveryPipeline,
        queue: DeliveryQueue | None,
        critical_log: CriticalFailureLog,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._queue = queue
        self._critical_log = critical_log
        self._settings = settings or get_settings()

    @property
    def pipeline(self) -> DirectDeliveryPipeline:
        return self._pipeline

    async def guarantee_delivery(
        self,
        event: CrmEvent | Mapping[str, Any],
        *,
        priority: int | None = None,
        delay_ms: int = 0,
    ) -> DeliveryOutcome:
        delivery_id = new_delivery_id()
        machine = DeliveryStateMachine(delivery_id)
        context = _event_context(event)
        started = time.monotonic()
        priority = self._settings.delivery_default_priority if priority is None else int(priority)
        try:
            parsed = event if isinstance(event, CrmEvent) else CrmEvent.model_validate(event)
            await self.record_attempt(delivery_id, "all_tiers", "started", context, started=started)

            tier1 = await self._attempt_queue(parsed, delivery_id, priority=priority, delay_ms=delay_ms)
            if tier1.ok:
                machine.advance(DeliveryState.TIER1_QUEUE_OK)
                await self.record_attempt(delivery_id, "queue", "success", context, tier1.detail, started)
                return DeliveryOutcome(True, DeliveryTier.QUEUE, delivery_id, machine.state, tier1.detail)
            machine.advance(DeliveryState.TIER1_QUEUE_FAILED)
            self._tier_failed(DeliveryTier.QUEUE, delivery_id, tier1.detail)
            await self.record_attempt(delivery_id, "queue", "failed", context, tier1.detail, started)

            direct = await self._attempt_direct(parsed, delivery_id)
            context["tenant_id"] = direct.tenant_id
            if direct.success:
                machine.advance(DeliveryState.TIER2_DIRECT_OK)
                await self.record_attempt(delivery_id, "direct", "success", context, direct.to_dict(), started)
                return DeliveryOutcome(
                    True,
                    DeliveryTier.DIRECT,
                    delivery_id,
                    machine.state,
                    direct.to_dict(),
                    notifications_sent=direct.notifications_sent,
                )
            machine.advance(DeliveryState.TIER2_DIRECT_FAILED)
            self._tier_failed(DeliveryTier.DIRECT, delivery_id, {"error": direct.error, "failures": direct.failures})
            await self.record_attempt(delivery_id, "direct", "failed", context, direct.to_dict(), started)

            item = await self.schedule_batch(
                parsed,
                delivery_id=delivery_id,
                priority=priority,
                tenant_id=direct.tenant_id,
                error=direct.error,
            )
            machine.advance(DeliveryState.TIER3_BATCH_SCHEDULED)
            detail = {"queue_item_id": item.id, "scheduled_for": item.scheduled_for.isoformat()}
            await self.record_attempt(delivery_id, "batch", "queued_batch", context, detail, started)
            return DeliveryOutcome(
                True,
                DeliveryTier.BATCH,
                delivery_id,
                machine.state,
                detail,
                notifications_sent=direct.notifications_sent,
            )
        except Exception as exc:  # noqa: BLE001 - unexpected failures go to manual recovery.
            return await self._manual_recovery(event, delivery_id, machine, context, exc, started)

    async def _attempt_queue(
        self,
        event: CrmEvent,
        delivery_id: str,
        *,
        priority: int,
        delay_ms: int,
    ) -> _TierAttempt:
        if self._queue is None:
            return _TierAttempt(False, {"error": "queue not configured"})
        hints = QueueHints(
            priority=priority,
            delay_ms=max(0, int(delay_ms)),
            max_attempts=self._settings.queue_job_max_attempts,
            backoff_delay_ms=self._settings.queue_job_backoff_ms,
        )
        payload = build_job_payload(event=event.to_payload(), delivery_id=delivery_id, hints=hints)
        try:
            handle = await asyncio.wait_for(
                self._queue.enqueue(payload, hints, job_id=delivery_id),
                timeout=self._settings.queue_submit_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            return _TierAttempt(False, {"error": "queue submit timed out"})
        except Exception as exc:  # noqa: BLE001 - an unusable queue escalates to the direct tier.
            return _TierAttempt(False, {"error": str(exc) or type(exc).__name__})
        return _TierAttempt(
            True,
            {"job_id": handle.job_id, "queue": handle.queue_name, "newly_enqueued": handle.newly_enqueued},
        )

    async def _attempt_direct(self, event: CrmEvent, delivery_id: str) -> DirectDeliveryResult:
        try:
            return await asyncio.wait_for(
                self._pipeline.process(event, delivery_id=delivery_id),
                timeout=self._settings.direct_delivery_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            return DirectDeliveryResult.failed("direct delivery timed out")
        except Exception as exc:  # noqa: BLE001 - a broken direct tier escalates to the batch tier.
            logger.exception("direct_delivery_crashed delivery_id=%s", delivery_id)
            return DirectDeliveryResult.failed(str(exc) or type(exc).__name__)

    async def schedule_batch(
        self,
        event: CrmEvent,
        *,
        delivery_id: str,
        priority: int,
        tenant_id: str | None = None,
        error: str | None = None,
    ) -> DeliveryQueueItem:
        # Tier 3: persist the event for the batch sweep; raises when the store refuses the row.
        async with self._session_factory() as session:
            item = await queue_repo.insert_queue_item(
                session,
                delivery_id=delivery_id,
                payload=event.to_payload(),
                status=QueueStatus.PENDING,
                tier=DeliveryTier.BATCH,
                scheduled_for=_utc_now() + timedelta(seconds=self._settings.batch_delay_s),
                event_type=event.event,
                company_id=event.company_id,
                tenant_id=tenant_id,
                priority=priority,
                error_message=error,
            )
            await session.commit()
        increment_counter("delivery_batch_scheduled_total")
        logger.warning(
            "delivery_batch_scheduled delivery_id=%s queue_item_id=%s scheduled_for=%s",
            delivery_id,
            item.id,
            item.scheduled_for.isoformat(),
        )
        return item

    async def escalate_to_manual(
        self,
        event: CrmEvent | Mapping[str, Any],
        *,
        delivery_id: str,
        error: Exception,
    ) -> DeliveryOutcome:
        # Entry point for callers outside guarantee_delivery that hit an unrecoverable failure.
        machine = DeliveryStateMachine(delivery_id)
        context = _event_context(event)
        return await self._manual_recovery(event, delivery_id, machine, context, error, time.monotonic())

    async def _manual_recovery(
        self,
        event: CrmEvent | Mapping[str, Any],
        delivery_id: str,
        machine: DeliveryStateMachine,
        context: dict[str, Any],
        exc: Exception,
        started: float,
    ) -> DeliveryOutcome:
        logger.error(
            "delivery_unexpected_failure delivery_id=%s state=%s error=%s",
            delivery_id,
            machine.state.value,
            exc,
        )
        increment_counter("delivery_manual_recovery_total")
        if not machine.terminal:
            machine.advance(DeliveryState.TIER4_MANUAL)
        error = f"{type(exc).__name__}: {exc}"
        payload = _raw_payload(event)
        try:
            async with self._session_factory() as session:
                item = await queue_repo.insert_queue_item(
                    session,
                    delivery_id=delivery_id,
                    payload=payload,
                    status=QueueStatus.MANUAL_RECOVERY,
                    tier=DeliveryTier.MANUAL,
                    scheduled_for=_utc_now() + timedelta(seconds=self._settings.manual_recovery_delay_s),
                    event_type=context.get("event_type"),
                    company_id=context.get("company_id"),
                    tenant_id=context.get("tenant_id"),
                    error_message=error,
                )
                await session.commit()
        except Exception as persist_exc:  # noqa: BLE001 - the critical file is the last durable sink.
            await self._critical_log.append(
                {
                    "delivery_id": delivery_id,
                    "error": error,
                    "persistence_error": f"{type(persist_exc).__name__}: {persist_exc}",
                    "event": payload,
                }
            )
            return DeliveryOutcome(
                False,
                DeliveryTier.MANUAL,
                delivery_id,
                machine.state,
                {"error": error, "critical_log": str(self._critical_log.path)},
            )

        detail = {"error": error, "queue_item_id": item.id}
        await self.record_attempt(delivery_id, "manual", "manual_recovery", context, detail, started)
        return DeliveryOutcome(False, DeliveryTier.MANUAL, delivery_id, machine.state, detail)

    @staticmethod
    def _tier_failed(tier: DeliveryTier, delivery_id: str, detail: dict[str, Any]) -> None:
        increment_counter(f"delivery_tier_failed_{tier.value}_total")
        logger.warning(
            "delivery_tier_failed tier=%s delivery_id=%s detail=%s",
            tier.value,
            delivery_id,
            detail,
        )

    async def record_attempt(
        self,
        delivery_id: str,
        tier: str,
        status: str,
        context: Mapping[str, Any],
        result: dict[str, Any] | None = None,
        started: float | None = None,
    ) -> None:
        elapsed = int((time.monotonic() - started) * 1000) if started is not None else None
        try:
            async with self._session_factory() as session:
                await delivery_log_repo.append_entry(
                    session,
                    delivery_id=delivery_id,
                    tier=tier,
                    status=status,
                    tenant_id=context.get("tenant_id"),
                    company_id=context.get("company_id"),
                    event_type=context.get("event_type"),
                    result=result,
                    processing_time_ms=elapsed,
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - audit rows are best effort.
            logger.warning(
                "delivery_log_write_failed delivery_id=%s tier=%s status=%s error=%s",
                delivery_id,
                tier,
                status,
                exc,
            )

    async def process_batch_queue(self, limit: int | None = None) -> dict[str, int]:
        # Sweep due batch rows; each is claimed by a conditional update before it is replayed.
        limit = limit or self._settings.batch_page_size
        now = _utc_now()
        async with self._session_factory() as session:
            item_ids = await queue_repo.list_due_batch_ids(session, now=now, limit=limit)

        stats = {"processed": 0, "completed": 0, "failed": 0, "errors": 0, "malformed": 0, "skipped": 0}
        for item_id in item_ids:
            item = await self._claim(item_id, source=QueueStatus.PENDING)
            if item is None:
                stats["skipped"] += 1
                continue
            stats["processed"] += 1
            outcome = await self._replay(item, increment_on_failure=True)
            stats[outcome] += 1
        if item_ids:
            logger.info("batch_sweep_done %s", " ".join(f"{key}={value}" for key, value in stats.items()))
        return stats

    async def retry_failed(self, limit: int = 10) -> dict[str, Any]:
        # Operator retry: failed rows take the capped retry edge, manual-recovery rows are claimed directly.
        retry_cap = self._settings.retry_failed_max_retries
        async with self._session_factory() as session:
            item_ids = await queue_repo.list_retry_candidate_ids(session, retry_cap=retry_cap, limit=limit)

        stats: dict[str, Any] = {
            "attempted": 0,
            "completed": 0,
            "failed": 0,
            "errors": 0,
            "malformed": 0,
            "skipped": 0,
            "items": [],
        }
        for item_id in item_ids:
            async with self._session_factory() as session:
                current = await session.get(DeliveryQueueItem, item_id)
                status = current.status if current is not None else None
                if status == QueueStatus.FAILED.value:
                    requeued = await queue_repo.requeue_failed_items(
                        session, retry_cap=retry_cap, now=_utc_now(), item_ids=[item_id]
                    )
                    await session.commit()
                    source = QueueStatus.PENDING if requeued else None
                    increment_on_failure = False
                elif status == QueueStatus.MANUAL_RECOVERY.value:
                    source = QueueStatus.MANUAL_RECOVERY
                    increment_on_failure = True
                else:
                    source = None
                    increment_on_failure = False
            item = await self._claim(item_id, source=source) if source is not None else None
            if item is None:
                stats["skipped"] += 1
                continue
            stats["attempted"] += 1
            outcome = await self._replay(item, increment_on_failure=increment_on_failure)
            stats[outcome] += 1
            stats["items"].append({"id": item_id, "delivery_id": item.delivery_id, "result": outcome})
        logger.info(
            "retry_failed_done attempted=%s completed=%s failed=%s skipped=%s",
            stats["attempted"],
            stats["completed"],
            stats["failed"],
            stats["skipped"],
        )
        return stats

    async def _claim(self, item_id: str, *, source: QueueStatus) -> DeliveryQueueItem | None:
        async with self._session_factory() as session:
            claimed = await queue_repo.transition_queue_item(
                session,
                item_id,
                source=source,
                target=QueueStatus.PROCESSING,
                values={"claimed_at": _utc_now()},
            )
            await session.commit()
            if not claimed:
                return None
            return await session.get(DeliveryQueueItem, item_id)

    async def _replay(self, item: DeliveryQueueItem, *, increment_on_failure: bool) -> str:
        # Run a claimed row through the direct path and settle it; returns the stats bucket.
        ceiling = retry_ceiling(self._settings)
        context = {"company_id": item.company_id, "event_type": item.event_type, "tenant_id": item.tenant_id}
        started = time.monotonic()
        try:
            event = parse_stored_event(item.payload_json)
        except MalformedPayloadError as exc:
            await self._settle(
                item.id,
                QueueStatus.FAILED,
                {"error_message": f"malformed payload: {exc}", "retry_count": ceiling},
            )
            logger.error("queue_item_malformed queue_item_id=%s error=%s", item.id, exc)
            detail = {"error": "malformed payload"}
            await self.record_attempt(item.delivery_id, item.tier, "failed", context, detail, started)
            return "malformed"

        try:
            result = await asyncio.wait_for(
                self._pipeline.process(event, delivery_id=item.delivery_id),
                timeout=self._settings.direct_delivery_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            # Timeouts stay retryable; only crashes park the row in error.
            logger.warning("queue_item_replay_timeout queue_item_id=%s", item.id)
            timeout_values: dict[str, Any] = {"error_message": "direct delivery timed out"}
            if increment_on_failure:
                timeout_values["retry_count"] = DeliveryQueueItem.retry_count + 1
            await self._settle(item.id, QueueStatus.FAILED, timeout_values)
            detail = {"error": "direct delivery timed out"}
            await self.record_attempt(item.delivery_id, item.tier, "failed", context, detail, started)
            return "failed"
        except Exception as exc:  # noqa: BLE001 - a crashing replay parks the row in error for an operator.
            logger.exception("queue_item_replay_crashed queue_item_id=%s", item.id)
            await self._settle(item.id, QueueStatus.ERROR, {"error_message": f"{type(exc).__name__}: {exc}"})
            await self.record_attempt(item.delivery_id, item.tier, "failed", context, {"error": str(exc)}, started)
            return "errors"

        context["tenant_id"] = result.tenant_id or item.tenant_id
        if result.success:
            await self._settle(
                item.id,
                QueueStatus.COMPLETED,
                {
                    "processed_at": _utc_now(),
                    "notifications_sent": result.notifications_sent,
                    "tenant_id": context["tenant_id"],
                    "error_message": None,
                },
            )
            await self.record_attempt(item.delivery_id, item.tier, "success", context, result.to_dict(), started)
            return "completed"

        values: dict[str, Any] = {
            "error_message": result.error or f"{result.failures} send(s) failed",
            "tenant_id": context["tenant_id"],
        }
        if increment_on_failure:
            values["retry_count"] = DeliveryQueueItem.retry_count + 1
        await self._settle(item.id, QueueStatus.FAILED, values)
        await self.record_attempt(item.delivery_id, item.tier, "failed", context, result.to_dict(), started)
        return "failed"

    async def _settle(self, item_id: str, target: QueueStatus, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            settled = await queue_repo.transition_queue_item(
                session,
                item_id,
                source=QueueStatus.PROCESSING,
                target=target,
                values=values,
            )
            await session.commit()
        if not settled:
            logger.warning("queue_item_settle_lost queue_item_id=%s target=%s", item_id, target.value)

    async def get_delivery_stats(self, hours: int = 24) -> dict[str, Any]:
        since = _utc_now() - timedelta(hours=hours)
        async with self._session_factory() as session:
            breakdown = await delivery_log_repo.tier_status_breakdown(session, since=since)
            summary = await delivery_log_repo.outcome_summary(session, since=since)
            queue_counts = await queue_repo.count_by_status(session)
        return {
            "window_hours": hours,
            "since": since.isoformat(),
            "breakdown": breakdown,
            "summary": {
                "total_deliveries": summary["total"],
                "successful": summary["successful"],
                "failed": summary["failed"],
                "queued_batch": summary["queued_batch"],
                "manual_recovery": summary["manual_recovery"],
                "success_rate": summary["success_rate"],
                "avg_processing_time_ms": summary["avg_processing_time_ms"],
            },
            "queue": queue_counts,
        }

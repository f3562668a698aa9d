from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from typing import Any, Awaitable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmrelay.core.config import Settings, get_settings
from crmrelay.services.delivery.critical_log import CriticalFailureLog
from crmrelay.services.delivery.direct import DirectDeliveryPipeline
from crmrelay.services.delivery.orchestrator import DeliveryOrchestrator
from crmrelay.services.delivery.queue import ArqDeliveryQueue, DeliveryQueue
from crmrelay.services.notifications.chat_client import ChatSink, GoogleChatClient
from crmrelay.services.notifications.dedup import Deduplicator
from crmrelay.services.notifications.rendering import MessageRenderer
from crmrelay.services.operability.monitor import SelfHealingMonitor
from crmrelay.services.tenancy.resolver import TenantResolver


logger = logging.getLogger(__name__)


@dataclass
class RelayRuntime:
    # Owns every long-lived collaborator so processes start and stop them in one place.
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    resolver: TenantResolver
    deduplicator: Deduplicator
    chat_sink: ChatSink
    queue: DeliveryQueue | None
    pipeline: DirectDeliveryPipeline
    orchestrator: DeliveryOrchestrator
    monitor: SelfHealingMonitor
    critical_log: CriticalFailureLog

    async def start(self, *, with_monitor: bool = False) -> None:
        self.deduplicator.start()
        if with_monitor:
            self.monitor.start()

    async def aclose(self) -> None:
        await self.monitor.stop()
        await self.deduplicator.stop()
        close_sink = getattr(self.chat_sink, "aclose", None)
        if close_sink is not None:
            await close_sink()
        close_queue = getattr(self.queue, "close", None)
        if close_queue is not None:
            await close_queue()


def build_runtime(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    queue: DeliveryQueue | None = None,
    use_queue: bool = True,
    chat_sink: ChatSink | None = None,
    renderer: MessageRenderer | None = None,
    deduplicator: Deduplicator | None = None,
    settings: Settings | None = None,
) -> RelayRuntime:
    settings = settings or get_settings()
    if session_factory is None:
        from crmrelay.persistence.db import SessionLocal

        session_factory = SessionLocal
    if queue is None and use_queue:
        queue = ArqDeliveryQueue(redis_url=settings.redis_url, queue_name=settings.relay_queue_name)
    chat_sink = chat_sink or GoogleChatClient(timeout_ms=settings.chat_send_timeout_ms)
    deduplicator = deduplicator or Deduplicator(
        window_s=settings.dedup_window_s,
        eviction_interval_s=settings.dedup_eviction_interval_s,
    )
    resolver = TenantResolver(session_factory=session_factory)
    pipeline = DirectDeliveryPipeline(
        session_factory=session_factory,
        resolver=resolver,
        deduplicator=deduplicator,
        chat_sink=chat_sink,
        renderer=renderer,
        settings=settings,
    )
    critical_log = CriticalFailureLog(settings.critical_failure_log_path)
    orchestrator = DeliveryOrchestrator(
        session_factory=session_factory,
        pipeline=pipeline,
        queue=queue,
        critical_log=critical_log,
        settings=settings,
    )
    monitor = SelfHealingMonitor(
        session_factory=session_factory,
        orchestrator=orchestrator,
        resolver=resolver,
        settings=settings,
    )
    return RelayRuntime(
        settings=settings,
        session_factory=session_factory,
        resolver=resolver,
        deduplicator=deduplicator,
        chat_sink=chat_sink,
        queue=queue,
        pipeline=pipeline,
        orchestrator=orchestrator,
        monitor=monitor,
        critical_log=critical_log,
    )


@lru_cache(maxsize=1)
def get_runtime() -> RelayRuntime:
    return build_runtime()


def is_ops_failure(result: dict[str, Any]) -> bool:
    return result.get("ok") is False and "error" in result


async def _ops_report(operation: str, call: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    # Operator entry points answer with a report even when the store is down.
    try:
        return await call
    except Exception as exc:  # noqa: BLE001 - surfaced to the operator as a failure report.
        logger.exception("ops_operation_failed operation=%s", operation)
        return {"ok": False, "operation": operation, "error": f"{type(exc).__name__}: {exc}"}


async def _health_report(runtime: RelayRuntime) -> dict[str, Any]:
    report = await runtime.monitor.run_self_healing()
    return report.to_dict()


async def run_health_check(runtime: RelayRuntime | None = None) -> dict[str, Any]:
    runtime = runtime or get_runtime()
    return await _ops_report("health_check", _health_report(runtime))


async def run_emergency_heal(runtime: RelayRuntime | None = None) -> dict[str, Any]:
    runtime = runtime or get_runtime()
    logger.warning("emergency_heal_requested")
    return await _ops_report("emergency_heal", runtime.monitor.run_emergency_heal())


async def retry_failed(limit: int = 10, runtime: RelayRuntime | None = None) -> dict[str, Any]:
    runtime = runtime or get_runtime()
    return await _ops_report("retry_failed", runtime.orchestrator.retry_failed(limit=limit))


async def get_delivery_stats(hours: int = 24, runtime: RelayRuntime | None = None) -> dict[str, Any]:
    runtime = runtime or get_runtime()
    return await _ops_report("delivery_stats", runtime.orchestrator.get_delivery_stats(hours=hours))

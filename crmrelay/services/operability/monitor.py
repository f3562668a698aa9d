from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmrelay.core.config import Settings, get_settings
from crmrelay.domain.models import DeliveryQueueItem
from crmrelay.domain.state import DeliveryTier, QueueStatus
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.persistence.repos import delivery_queue as queue_repo
from crmrelay.persistence.repos import rules as rules_repo
from crmrelay.persistence.repos import tenants as tenants_repo
from crmrelay.services import maintenance
from crmrelay.services.delivery.orchestrator import DeliveryOrchestrator
from crmrelay.services.operability.report import HealthCheckReport
from crmrelay.services.telemetry import increment_counter
from crmrelay.services.tenancy.resolver import TenantResolver
from crmrelay.services.tenancy.strategies import MajorityVoteMapping


logger = logging.getLogger(__name__)

CheckFn = Callable[[HealthCheckReport], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SelfHealingMonitor:
    """Periodic health checks over the delivery store, with bounded automatic fixes.

    Each check runs in isolation: an exception inside one is reported as a
    critical issue and the remaining checks still run. Fixes only ever move
    queue rows along legal transitions, and tenant remapping reuses the
    resolver's mapping lock so it cannot race a live resolution.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: DeliveryOrchestrator,
        resolver: TenantResolver | None = None,
        mapping_strategy: MajorityVoteMapping | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._resolver = resolver
        self._mapping_strategy = mapping_strategy or MajorityVoteMapping()
        self._settings = settings or get_settings()
        self._task: asyncio.Task[None] | None = None
        self._last_report: HealthCheckReport | None = None

    @property
    def last_report(self) -> HealthCheckReport | None:
        return self._last_report

    def checks(self) -> list[tuple[str, CheckFn]]:
        return [
            ("queue_health", self.check_queue_health),
            ("tenant_mapping", self.check_tenant_mapping),
            ("delivery_performance", self.check_delivery_performance),
            ("storage", self.check_storage),
            ("endpoints", self.check_endpoints),
        ]

    async def run_self_healing(self) -> HealthCheckReport:
        started = time.monotonic()
        report = HealthCheckReport(checked_at=_utc_now())
        for name, check in self.checks():
            report.checks_run.append(name)
            try:
                await check(report)
            except Exception as exc:  # noqa: BLE001 - one broken check must not stop the others.
                logger.exception("health_check_crashed check=%s", name)
                report.add_issue(name, "critical", f"check failed: {type(exc).__name__}: {exc}")
        report.duration_ms = int((time.monotonic() - started) * 1000)
        self._last_report = report
        increment_counter("self_healing_runs_total")
        logger.info(
            "self_healing_done healthy=%s issues=%s auto_fixes=%s manual_actions=%s duration_ms=%s",
            report.healthy,
            len(report.issues),
            len(report.auto_fixes),
            len(report.manual_actions),
            report.duration_ms,
        )
        return report

    async def check_queue_health(self, report: HealthCheckReport) -> None:
        settings = self._settings
        now = _utc_now()
        age_cutoff = now - timedelta(hours=settings.healing_max_queue_age_hours)
        async with self._session_factory() as session:
            failed_recent = await queue_repo.count_items(
                session, status=QueueStatus.FAILED, created_after=age_cutoff
            )
            if failed_recent > settings.healing_max_failed_queue_items:
                report.add_issue(
                    "queue_health",
                    "warning",
                    f"{failed_recent} failed queue items in the last {settings.healing_max_queue_age_hours}h",
                    failed=failed_recent,
                    threshold=settings.healing_max_failed_queue_items,
                )
                requeued = await queue_repo.requeue_failed_items(
                    session,
                    retry_cap=settings.healing_max_auto_retries,
                    now=now,
                    created_after=now - timedelta(minutes=settings.healing_requeue_window_minutes),
                )
                await session.commit()
                if requeued:
                    report.add_fix("queue_health", "requeue_failed", requeued)

            stale_pending = await queue_repo.count_items(
                session, status=QueueStatus.PENDING, created_before=age_cutoff
            )
            if stale_pending:
                report.add_issue(
                    "queue_health",
                    "warning",
                    f"{stale_pending} pending queue items older than {settings.healing_max_queue_age_hours}h",
                    pending=stale_pending,
                )
                rescheduled = await queue_repo.reschedule_stale_pending(session, created_before=age_cutoff, now=now)
                await session.commit()
                if rescheduled:
                    report.add_fix("queue_health", "reschedule_stale_pending", rescheduled)

            errored = await queue_repo.count_items(session, status=QueueStatus.ERROR)
            if errored:
                report.add_issue("queue_health", "warning", f"{errored} queue items in error", errors=errored)
                report.add_manual_action("queue_health", "inspect_error_items", count=errored)

    async def check_tenant_mapping(self, report: HealthCheckReport) -> None:
        since = _utc_now() - timedelta(days=self._settings.healing_mapping_lookback_days)
        async with self._session_factory() as session:
            unmapped_ids = [tenant.id for tenant in await tenants_repo.list_unmapped_tenants_with_rules(session)]
            for tenant_id in unmapped_ids:
                tenant = await tenants_repo.get_tenant(session, tenant_id)
                if tenant is None or tenant.external_company_id is not None:
                    continue
                proposal = await self._mapping_strategy.propose(session, tenant=tenant, since=since)
                if proposal is None:
                    report.add_issue(
                        "tenant_mapping",
                        "warning",
                        f"tenant {tenant_id} has enabled rules but no company mapping",
                        tenant_id=tenant_id,
                    )
                    continue
                await session.rollback()
                bound = False
                async with self._lock_for(session, proposal.company_id):
                    # Re-check under the lock; a live resolution may have bound the id meanwhile.
                    tenant = await tenants_repo.get_tenant(session, tenant_id)
                    confirmed = None
                    if tenant is not None:
                        confirmed = await self._mapping_strategy.propose(session, tenant=tenant, since=since)
                    if confirmed is not None and confirmed.company_id == proposal.company_id:
                        bound = await tenants_repo.bind_company_id(
                            session, tenant_id=tenant_id, company_id=proposal.company_id
                        )
                    await session.commit()
                if bound:
                    report.add_fix(
                        "tenant_mapping",
                        "map_company_id",
                        1,
                        tenant_id=tenant_id,
                        company_id=proposal.company_id,
                        votes=proposal.votes,
                    )
                    logger.info(
                        "tenant_auto_mapped tenant_id=%s company_id=%s votes=%s/%s",
                        tenant_id,
                        proposal.company_id,
                        proposal.votes,
                        proposal.total_votes,
                    )

            duplicates = await tenants_repo.find_duplicate_company_mappings(session)
            for company_id, tenant_ids in duplicates.items():
                report.add_issue(
                    "tenant_mapping",
                    "warning",
                    f"company {company_id} is mapped to {len(tenant_ids)} tenants",
                    company_id=company_id,
                    tenant_ids=tenant_ids,
                )
                report.add_manual_action(
                    "tenant_mapping",
                    "consolidate_duplicate_tenants",
                    company_id=company_id,
                    tenant_ids=tenant_ids,
                )

    @asynccontextmanager
    async def _lock_for(self, session: AsyncSession, company_id: str) -> AsyncIterator[None]:
        if self._resolver is None:
            yield
            return
        async with self._resolver.mapping_lock(session, company_id):
            yield

    async def check_delivery_performance(self, report: HealthCheckReport) -> None:
        settings = self._settings
        now = _utc_now()
        since = now - timedelta(minutes=settings.healing_performance_window_minutes)
        async with self._session_factory() as session:
            summary = await delivery_log_repo.outcome_summary(session, since=since)
            backlog = await queue_repo.count_items(
                session,
                status=QueueStatus.PENDING,
                tier=DeliveryTier.BATCH,
                created_before=now - timedelta(minutes=settings.healing_batch_backlog_age_minutes),
            )

        success_rate = summary["success_rate"]
        if success_rate is not None and success_rate < settings.healing_success_rate_min_pct:
            report.add_issue(
                "delivery_performance",
                "warning",
                f"success rate {success_rate}% below {settings.healing_success_rate_min_pct}%",
                success_rate=success_rate,
                total=summary["total"],
            )
        avg_latency = summary["avg_processing_time_ms"]
        if avg_latency is not None and avg_latency > settings.healing_max_avg_latency_ms:
            report.add_issue(
                "delivery_performance",
                "warning",
                f"average delivery latency {avg_latency}ms above {settings.healing_max_avg_latency_ms}ms",
                avg_processing_time_ms=avg_latency,
            )
        if backlog:
            report.add_issue(
                "delivery_performance",
                "warning",
                f"{backlog} batch items waiting over {settings.healing_batch_backlog_age_minutes} minutes",
                backlog=backlog,
            )
            stats = await self._orchestrator.process_batch_queue()
            report.add_fix("delivery_performance", "process_batch_queue", stats["processed"], stats=stats)

    async def check_storage(self, report: HealthCheckReport) -> None:
        async with self._session_factory() as session:
            log_deleted = await maintenance.prune_delivery_log(session, settings=self._settings)
            queue_deleted = await maintenance.prune_completed_queue(session, settings=self._settings)
            quarantined = await maintenance.quarantine_malformed(session, settings=self._settings)
        if log_deleted:
            report.add_fix("storage", "prune_delivery_log", log_deleted)
        if queue_deleted:
            report.add_fix("storage", "prune_completed_queue", queue_deleted)
        if quarantined:
            report.add_issue(
                "storage",
                "warning",
                f"{len(quarantined)} queue items had malformed payloads",
                queue_item_ids=quarantined,
            )
            report.add_fix("storage", "quarantine_malformed", len(quarantined))

    async def check_endpoints(self, report: HealthCheckReport) -> None:
        # Configuration check only; nothing is posted to chat endpoints.
        async with self._session_factory() as session:
            tenants = await tenants_repo.list_tenants_with_enabled_rules(
                session, limit=self._settings.healing_endpoint_sample_size
            )
            for tenant in tenants:
                active = await rules_repo.count_active_endpoints(session, tenant_id=tenant.id)
                if active == 0:
                    report.add_issue(
                        "endpoints",
                        "warning",
                        f"tenant {tenant.id} has enabled rules but no active endpoint",
                        tenant_id=tenant.id,
                    )

    async def run_emergency_heal(self) -> dict[str, Any]:
        # Operator escape hatch: unlock stuck rows, retry recent failures, then drain the batch queue.
        settings = self._settings
        started = time.monotonic()
        now = _utc_now()
        async with self._session_factory() as session:
            cleared = await queue_repo.transition_queue_items(
                session,
                source=QueueStatus.PROCESSING,
                target=QueueStatus.FAILED,
                where=[
                    DeliveryQueueItem.claimed_at
                    < now - timedelta(minutes=settings.healing_stale_lock_minutes)
                ],
                values={"error_message": "stale processing lock cleared"},
            )
            await session.commit()
            requeued = await queue_repo.requeue_failed_items(
                session,
                retry_cap=settings.healing_max_auto_retries,
                now=now,
                created_after=now - timedelta(hours=settings.healing_emergency_window_hours),
            )
            await session.commit()

        drained = {"processed": 0, "completed": 0, "failed": 0, "errors": 0, "malformed": 0, "skipped": 0}
        pages = 0
        for _ in range(settings.healing_emergency_max_batch_pages):
            stats = await self._orchestrator.process_batch_queue()
            pages += 1
            for key, value in stats.items():
                drained[key] = drained.get(key, 0) + value
            if stats["processed"] + stats["skipped"] < settings.batch_page_size:
                break

        result = {
            "stale_locks_cleared": cleared,
            "failed_requeued": requeued,
            "batch_pages": pages,
            "batch": drained,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        logger.warning(
            "emergency_heal_done stale_locks_cleared=%s failed_requeued=%s batch_processed=%s",
            cleared,
            requeued,
            drained["processed"],
        )
        return result

    async def run_forever(self) -> None:
        interval = max(1, int(self._settings.healing_interval_s))
        while True:
            await self.run_self_healing()
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if not self._settings.healing_enabled:
            logger.info("self_healing_disabled")
            return
        self._task = asyncio.create_task(self.run_forever(), name="self-healing-monitor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmrelay.core.config import Settings, get_settings
from crmrelay.core.errors import ConfigurationError, NoTenantFoundError
from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import ChannelEndpoint, Rule
from crmrelay.domain.state import DeliveryTier, QueueStatus, new_delivery_id
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.persistence.repos import delivery_queue as queue_repo
from crmrelay.persistence.repos import rules as rules_repo
from crmrelay.services.notifications.chat_client import ChatSink, is_retryable_send_error
from crmrelay.services.notifications.dedup import DedupKey, Deduplicator
from crmrelay.services.notifications.quiet_hours import QuietCheck, check_quiet_time, parse_quiet_hours
from crmrelay.services.notifications.rendering import MessageRenderer, PlainTextRenderer
from crmrelay.services.notifications.routing import RoutingThresholds, default_thresholds, select_endpoint
from crmrelay.services.resilience import RetryPolicy, chat_send_policy, retry_async
from crmrelay.services.rules import taxonomy
from crmrelay.services.rules.filters import apply_filters
from crmrelay.services.rules.matcher import find_rules
from crmrelay.services.telemetry import increment_counter, record_external_call
from crmrelay.services.tenancy.resolver import TenantResolution, TenantResolver


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RuleSendResult:
    rule_id: str
    status: str
    endpoint_id: str | None = None
    route_reason: str | None = None
    response_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class DirectDeliveryResult:
    tenant_id: str | None
    rules_matched: int
    notifications_sent: int
    failures: int
    suppressed: int = 0
    filtered: int = 0
    deferred: int = 0
    deferred_until: str | None = None
    deferred_item_id: str | None = None
    match_step: str = "none"
    error: str | None = None
    sends: tuple[RuleSendResult, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        # Nothing deliverable and nothing broken is a success; so is any send going out.
        if self.error is not None:
            return False
        return self.notifications_sent > 0 or self.failures == 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sends"] = [asdict(send) for send in self.sends]
        payload["success"] = self.success
        return payload

    @classmethod
    def failed(cls, error: str, *, tenant_id: str | None = None) -> "DirectDeliveryResult":
        return cls(tenant_id=tenant_id, rules_matched=0, notifications_sent=0, failures=1, error=error)


class DirectDeliveryPipeline:
    """Deliver one event synchronously: resolve, match, filter, dedup, route, render, send.

    Used by Tier 2, the batch sweep, operator retries and the queue worker. Every
    per-rule outcome is written to ``notification_logs``; a failed send releases
    its dedup reservation so a later attempt is not suppressed. During a tenant's
    quiet hours matching rules are deferred and the event is parked as a batch
    row scheduled for the end of the window.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: TenantResolver,
        deduplicator: Deduplicator,
        chat_sink: ChatSink,
        renderer: MessageRenderer | None = None,
        settings: Settings | None = None,
        send_policy: RetryPolicy | None = None,
        thresholds: RoutingThresholds | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._resolver = resolver
        self._deduplicator = deduplicator
        self._chat_sink = chat_sink
        self._renderer = renderer or PlainTextRenderer()
        self._settings = settings or get_settings()
        self._send_policy = send_policy or chat_send_policy(self._settings)
        self._thresholds = thresholds or default_thresholds(self._settings)

    @property
    def deduplicator(self) -> Deduplicator:
        return self._deduplicator

    async def process(self, event: CrmEvent, *, delivery_id: str | None = None) -> DirectDeliveryResult:
        try:
            resolution = await self._resolver.resolve(event)
        except NoTenantFoundError as exc:
            logger.warning(
                "direct_delivery_no_tenant delivery_id=%s company_id=%s event=%s",
                delivery_id,
                event.company_id,
                event.event,
            )
            return DirectDeliveryResult.failed(str(exc))

        async with self._session_factory() as session:
            match = await find_rules(
                session,
                tenant_id=resolution.tenant_id,
                event_type=event.event,
                current=event.current,
                previous=event.previous,
            )
            if not match.rules:
                logger.info(
                    "direct_delivery_no_rules delivery_id=%s tenant_id=%s event=%s",
                    delivery_id,
                    resolution.tenant_id,
                    event.event,
                )
                return DirectDeliveryResult(
                    tenant_id=resolution.tenant_id,
                    rules_matched=0,
                    notifications_sent=0,
                    failures=0,
                )

            endpoints = await rules_repo.list_active_endpoints(session, tenant_id=resolution.tenant_id)
            quiet = self._quiet_check(resolution, delivery_id)
            sends: list[RuleSendResult] = []
            for rule in match.rules:
                sends.append(
                    await self._deliver_rule(
                        event,
                        rule,
                        endpoints,
                        resolution=resolution,
                        delivery_id=delivery_id,
                        quiet=quiet,
                    )
                )

            deferred_item_id: str | None = None
            if quiet is not None and any(send.status == "deferred" for send in sends):
                try:
                    deferred_item_id = await self._defer_until_quiet_ends(
                        session, event, resolution, quiet, delivery_id
                    )
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.error(
                        "quiet_hours_deferral_failed delivery_id=%s tenant_id=%s error=%s",
                        delivery_id,
                        resolution.tenant_id,
                        exc,
                    )
                    return DirectDeliveryResult.failed(
                        f"quiet hours deferral not stored: {exc}", tenant_id=resolution.tenant_id
                    )
            await self._write_notification_logs(session, sends, resolution, event, delivery_id)

        deferred = sum(1 for send in sends if send.status == "deferred")
        result = DirectDeliveryResult(
            tenant_id=resolution.tenant_id,
            rules_matched=len(match.rules),
            notifications_sent=sum(1 for send in sends if send.status == "sent"),
            failures=sum(1 for send in sends if send.status in {"failed", "unrouted"}),
            suppressed=sum(1 for send in sends if send.status == "suppressed"),
            filtered=sum(1 for send in sends if send.status == "filtered"),
            deferred=deferred,
            deferred_until=quiet.next_allowed.isoformat() if deferred and quiet and quiet.next_allowed else None,
            deferred_item_id=deferred_item_id,
            match_step=match.step,
            sends=tuple(sends),
        )
        logger.info(
            "direct_delivery_done delivery_id=%s tenant_id=%s rules=%s sent=%s failed=%s suppressed=%s deferred=%s",
            delivery_id,
            result.tenant_id,
            result.rules_matched,
            result.notifications_sent,
            result.failures,
            result.suppressed,
            result.deferred,
        )
        return result

    def _quiet_check(self, resolution: TenantResolution, delivery_id: str | None) -> QuietCheck | None:
        if not self._settings.quiet_hours_enabled:
            return None
        try:
            config = parse_quiet_hours(resolution.settings.get("quiet_hours"))
        except ConfigurationError as exc:
            # A broken block must not hold notifications back.
            logger.warning(
                "tenant_quiet_hours_invalid delivery_id=%s tenant_id=%s error=%s",
                delivery_id,
                resolution.tenant_id,
                exc,
            )
            return None
        if config is None:
            return None
        check = check_quiet_time(config, now=_utc_now(), tz=resolution.timezone)
        return check if check.is_quiet else None

    async def _defer_until_quiet_ends(
        self,
        session: AsyncSession,
        event: CrmEvent,
        resolution: TenantResolution,
        quiet: QuietCheck,
        delivery_id: str | None,
    ) -> str:
        # One batch row per event; the sweep replays it once the window has closed.
        scheduled_for = quiet.next_allowed or _utc_now()
        item = await queue_repo.insert_queue_item(
            session,
            delivery_id=delivery_id or new_delivery_id(),
            payload=event.to_payload(),
            status=QueueStatus.PENDING,
            tier=DeliveryTier.BATCH,
            scheduled_for=scheduled_for,
            event_type=event.event,
            company_id=event.company_id,
            tenant_id=resolution.tenant_id,
            priority=self._settings.delivery_default_priority,
        )
        item_id = item.id
        await session.commit()
        increment_counter("notifications_deferred_total")
        logger.info(
            "notification_deferred delivery_id=%s tenant_id=%s reason=%s queue_item_id=%s scheduled_for=%s",
            delivery_id,
            resolution.tenant_id,
            quiet.reason,
            item_id,
            scheduled_for.isoformat(),
        )
        return item_id

    async def _deliver_rule(
        self,
        event: CrmEvent,
        rule: Rule,
        endpoints: list[ChannelEndpoint],
        *,
        resolution: TenantResolution,
        delivery_id: str | None,
        quiet: QuietCheck | None = None,
    ) -> RuleSendResult:
        now = _utc_now()
        if not apply_filters(
            event,
            rule.filters_json,
            fail_open=self._settings.filter_fail_open,
            now=now,
            tz=resolution.timezone,
            rule_id=rule.id,
        ):
            return RuleSendResult(rule_id=rule.id, status="filtered")

        # Quiet hours hold the send before any dedup reservation is taken.
        if quiet is not None:
            return RuleSendResult(rule_id=rule.id, status="deferred", route_reason=quiet.reason)

        key: DedupKey | None = None
        object_id = event.object_id
        if object_id is not None:
            key = DedupKey(
                tenant_id=resolution.tenant_id,
                rule_id=rule.id,
                object_id=object_id,
                event_type=taxonomy.canonical_event(event.event),
            )
            if not self._deduplicator.claim(key):
                increment_counter("dedup_suppressed_total")
                logger.info("notification_suppressed delivery_id=%s key=%s", delivery_id, key.as_string())
                return RuleSendResult(rule_id=rule.id, status="suppressed")

        decision = select_endpoint(
            event,
            rule,
            endpoints,
            now=now,
            tz=resolution.timezone,
            thresholds=self._thresholds,
        )
        if decision is None:
            if key is not None:
                self._deduplicator.release(key)
            logger.warning(
                "notification_unrouted delivery_id=%s tenant_id=%s rule_id=%s",
                delivery_id,
                resolution.tenant_id,
                rule.id,
            )
            return RuleSendResult(rule_id=rule.id, status="unrouted", error="no active endpoint")

        message = self._renderer.render(event, rule)
        started = time.monotonic()
        try:
            ack = await retry_async(
                lambda: self._chat_sink.post(decision.endpoint.address, message),
                policy=self._send_policy,
                retryable=is_retryable_send_error,
                name="chat_send",
            )
        except Exception as exc:  # noqa: BLE001 - one failed send is counted, the other rules still run.
            if key is not None:
                self._deduplicator.release(key)
            record_external_call(
                integration="chat",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            increment_counter("chat_send_failures_total")
            logger.warning(
                "notification_send_failed delivery_id=%s rule_id=%s endpoint_id=%s error=%s",
                delivery_id,
                rule.id,
                decision.endpoint.id,
                exc,
            )
            return RuleSendResult(
                rule_id=rule.id,
                status="failed",
                endpoint_id=decision.endpoint.id,
                route_reason=decision.reason,
                response_code=getattr(exc, "status_code", None),
                error=str(exc) or type(exc).__name__,
            )

        record_external_call(integration="chat", latency_ms=ack.latency_ms, success=True)
        return RuleSendResult(
            rule_id=rule.id,
            status="sent",
            endpoint_id=decision.endpoint.id,
            route_reason=decision.reason,
            response_code=ack.status_code,
        )

    async def _write_notification_logs(
        self,
        session: AsyncSession,
        sends: list[RuleSendResult],
        resolution: TenantResolution,
        event: CrmEvent,
        delivery_id: str | None,
    ) -> None:
        try:
            for send in sends:
                if send.status == "filtered":
                    continue
                await delivery_log_repo.append_notification_log(
                    session,
                    tenant_id=resolution.tenant_id,
                    rule_id=send.rule_id,
                    endpoint_id=send.endpoint_id,
                    delivery_id=delivery_id,
                    event_type=event.event,
                    status=send.status,
                    response_code=send.response_code,
                    error_message=send.error,
                )
            await session.commit()
        except SQLAlchemyError as exc:
            # Sends already happened; losing the per-send audit must not trigger a resend.
            await session.rollback()
            logger.warning("notification_log_write_failed delivery_id=%s error=%s", delivery_id, exc)

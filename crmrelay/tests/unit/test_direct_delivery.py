from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import DeliveryQueueItem, NotificationLog, Tenant
from crmrelay.services.delivery.direct import DirectDeliveryPipeline
from crmrelay.services.notifications.dedup import Deduplicator
from crmrelay.services.resilience import RetryPolicy
from crmrelay.services.tenancy.resolver import TenantResolver
from crmrelay.tests.utils.fakes import FakeChatSink, crm_event, load_item, make_runtime, seed_tenant


def _event(**kwargs: object) -> CrmEvent:
    return CrmEvent.model_validate(crm_event(**kwargs))


async def _notification_logs(session_factory) -> list[NotificationLog]:
    async with session_factory() as session:
        result = await session.execute(select(NotificationLog).order_by(NotificationLog.id.asc()))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_matching_rule_sends_and_logs(session_factory, relay_settings) -> None:
    seeded = await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)

    result = await runtime.pipeline.process(_event(), delivery_id="del_1")

    assert result.success
    assert (result.rules_matched, result.notifications_sent, result.failures) == (1, 1, 0)
    assert result.match_step == "exact"
    assert sink.posts[0][0] == "https://chat.example.test/hook"
    assert "deal.added" in sink.posts[0][1]["text"]
    logs = await _notification_logs(session_factory)
    rows = [(log.rule_id, log.status, log.delivery_id) for log in logs]
    assert rows == [(seeded["rule_id"], "sent", "del_1")]


@pytest.mark.asyncio
async def test_alias_rule_matches_canonical_event(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, event_type="deal.create")
    runtime = make_runtime(session_factory, relay_settings)
    result = await runtime.pipeline.process(_event(event="deal.added"))
    assert result.match_step == "alias"
    assert result.notifications_sent == 1


@pytest.mark.asyncio
async def test_no_rules_is_a_successful_no_op(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, event_type="person.added")
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    result = await runtime.pipeline.process(_event(event="note.added"))
    assert result.success
    assert result.rules_matched == 0
    assert sink.posts == []


@pytest.mark.asyncio
async def test_repeat_send_is_suppressed_inside_window(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)

    first = await runtime.pipeline.process(_event())
    second = await runtime.pipeline.process(_event(event="deal.create"))

    assert first.notifications_sent == 1
    assert second.notifications_sent == 0
    assert second.suppressed == 1
    assert second.success
    assert len(sink.posts) == 1


@pytest.mark.asyncio
async def test_events_without_object_id_are_never_suppressed(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    await runtime.pipeline.process(_event(object_id=None))
    await runtime.pipeline.process(_event(object_id=None))
    assert len(sink.posts) == 2


@pytest.mark.asyncio
async def test_failed_send_releases_dedup_reservation(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink(fail_status=503)
    runtime = make_runtime(session_factory, relay_settings, sink=sink)

    failed = await runtime.pipeline.process(_event(), delivery_id="del_f")
    assert not failed.success
    assert failed.failures == 1
    assert failed.sends[0].response_code == 503
    assert len(runtime.deduplicator) == 0

    sink.fail_status = None
    retried = await runtime.pipeline.process(_event(), delivery_id="del_f")
    assert retried.notifications_sent == 1
    logs = await _notification_logs(session_factory)
    assert [log.status for log in logs] == ["failed", "sent"]
    assert logs[0].response_code == 503


@pytest.mark.asyncio
async def test_transient_send_failure_is_retried(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)

    class _FlakySink(FakeChatSink):
        async def post(self, address, message):
            if not self.posts:
                self.posts.append((address, message))
                raise TimeoutError("slow chat")
            return await super().post(address, message)

    sink = _FlakySink()
    pipeline = DirectDeliveryPipeline(
        session_factory=session_factory,
        resolver=TenantResolver(session_factory=session_factory),
        deduplicator=Deduplicator(window_s=300),
        chat_sink=sink,
        settings=relay_settings,
        send_policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1),
    )
    result = await pipeline.process(_event())
    assert result.notifications_sent == 1
    assert len(sink.posts) == 2


@pytest.mark.asyncio
async def test_filtered_rule_is_not_logged(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, filters={"value_min": 1000})
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    result = await runtime.pipeline.process(_event(value=10))
    assert result.success
    assert result.filtered == 1
    assert sink.posts == []
    assert await _notification_logs(session_factory) == []


@pytest.mark.asyncio
async def test_unparsable_filter_fails_open_by_default(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, filters="{broken")
    runtime = make_runtime(session_factory, relay_settings)
    result = await runtime.pipeline.process(_event(value=10))
    assert result.notifications_sent == 1


@pytest.mark.asyncio
async def test_inactive_endpoint_leaves_rule_unrouted(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, endpoint_active=False)
    runtime = make_runtime(session_factory, relay_settings)
    result = await runtime.pipeline.process(_event())
    assert not result.success
    assert result.sends[0].status == "unrouted"
    assert len(runtime.deduplicator) == 0


@pytest.mark.asyncio
async def test_event_without_company_or_user_fails(session_factory, relay_settings) -> None:
    runtime = make_runtime(session_factory, relay_settings)
    result = await runtime.pipeline.process(_event(company_id=None))
    assert not result.success
    assert result.tenant_id is None
    assert result.error is not None


@pytest.mark.asyncio
async def test_non_integer_filter_hour_fails_open(session_factory, relay_settings) -> None:
    filters = {"time_restrictions": {"business_hours_only": True, "start_hour": "nine", "end_hour": 17}}
    await seed_tenant(session_factory, filters=filters)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    result = await runtime.pipeline.process(_event())
    assert result.success
    assert result.notifications_sent == 1
    assert len(sink.posts) == 1


def _quiet_window_around_now() -> dict[str, object]:
    now = datetime.now(timezone.utc)
    return {
        "quiet_hours": {
            "enabled": True,
            "start_time": (now - timedelta(hours=1)).strftime("%H:%M"),
            "end_time": (now + timedelta(hours=1)).strftime("%H:%M"),
        }
    }


@pytest.mark.asyncio
async def test_quiet_hours_defer_event_to_a_batch_row(session_factory, relay_settings) -> None:
    seeded = await seed_tenant(session_factory, tenant_settings=_quiet_window_around_now())
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    before = datetime.now(timezone.utc)

    result = await runtime.pipeline.process(_event(), delivery_id="del_quiet")

    assert result.success
    assert (result.notifications_sent, result.deferred, result.failures) == (0, 1, 0)
    assert sink.posts == []
    assert len(runtime.deduplicator) == 0
    item = await load_item(session_factory, result.deferred_item_id)
    assert (item.status, item.tier, item.delivery_id) == ("pending", "batch", "del_quiet")
    assert before + timedelta(minutes=58) <= item.scheduled_for <= before + timedelta(hours=1)
    assert result.deferred_until == item.scheduled_for.isoformat()
    logs = await _notification_logs(session_factory)
    assert [(log.rule_id, log.status) for log in logs] == [(seeded["rule_id"], "deferred")]

    # Nothing is due until the window closes.
    assert (await runtime.orchestrator.process_batch_queue())["processed"] == 0


@pytest.mark.asyncio
async def test_deferred_row_is_delivered_once_quiet_hours_end(session_factory, relay_settings) -> None:
    seeded = await seed_tenant(session_factory, tenant_settings=_quiet_window_around_now())
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    result = await runtime.pipeline.process(_event())

    async with session_factory() as session:
        await session.execute(
            update(Tenant).where(Tenant.id == seeded["tenant_id"]).values(settings_json={})
        )
        await session.execute(
            update(DeliveryQueueItem)
            .where(DeliveryQueueItem.id == result.deferred_item_id)
            .values(scheduled_for=datetime.now(timezone.utc))
        )
        await session.commit()

    stats = await runtime.orchestrator.process_batch_queue()

    assert stats["completed"] == 1
    assert len(sink.posts) == 1
    assert (await load_item(session_factory, result.deferred_item_id)).notifications_sent == 1


@pytest.mark.asyncio
async def test_quiet_hours_switch_off_sends_immediately(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, tenant_settings=_quiet_window_around_now())
    sink = FakeChatSink()
    settings = relay_settings.model_copy(update={"quiet_hours_enabled": False})
    runtime = make_runtime(session_factory, settings, sink=sink)
    result = await runtime.pipeline.process(_event())
    assert (result.notifications_sent, result.deferred) == (1, 0)


@pytest.mark.asyncio
async def test_broken_quiet_hours_block_does_not_hold_sends(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory, tenant_settings={"quiet_hours": {"enabled": True, "start_time": "late"}})
    runtime = make_runtime(session_factory, relay_settings)
    result = await runtime.pipeline.process(_event())
    assert (result.notifications_sent, result.deferred) == (1, 0)

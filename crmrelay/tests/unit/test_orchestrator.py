from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import re

import pytest

from crmrelay.domain.state import DeliveryState, DeliveryTier
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.services.delivery.critical_log import CriticalFailureLog
from crmrelay.services.delivery.orchestrator import DeliveryOrchestrator, new_delivery_id
from crmrelay.tests.utils.fakes import (
    FailingQueue,
    FakeChatSink,
    FakeQueue,
    HangingQueue,
    crm_event,
    load_item,
    make_runtime,
    seed_queue_items,
    seed_tenant,
)


async def _log_rows(session_factory, delivery_id: str) -> list[tuple[str, str]]:
    async with session_factory() as session:
        entries = await delivery_log_repo.list_entries(session, delivery_id=delivery_id)
    return [(entry.tier, entry.status) for entry in entries]


def test_delivery_ids_are_time_prefixed_and_unique() -> None:
    first, second = new_delivery_id(), new_delivery_id()
    assert re.fullmatch(r"del_\d{13}_[0-9a-f]{9}", first)
    assert first != second


@pytest.mark.asyncio
async def test_queue_accepts_event(session_factory, relay_settings) -> None:
    queue = FakeQueue()
    runtime = make_runtime(session_factory, relay_settings, queue=queue)

    outcome = await runtime.orchestrator.guarantee_delivery(crm_event(), priority=2, delay_ms=1500)

    assert outcome.success
    assert outcome.tier is DeliveryTier.QUEUE
    assert outcome.state is DeliveryState.TIER1_QUEUE_OK
    payload, hints, job_id = queue.jobs[0]
    assert job_id == outcome.delivery_id
    assert payload["delivery_id"] == outcome.delivery_id
    assert payload["event"]["event"] == "deal.added"
    assert (hints.priority, hints.delay_ms) == (2, 1500)
    assert hints.max_attempts == relay_settings.queue_job_max_attempts
    assert await _log_rows(session_factory, outcome.delivery_id) == [
        ("all_tiers", "started"),
        ("queue", "success"),
    ]


@pytest.mark.asyncio
async def test_unreachable_queue_falls_back_to_direct(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink, queue=FailingQueue())

    outcome = await runtime.orchestrator.guarantee_delivery(crm_event())

    assert outcome.success
    assert outcome.tier is DeliveryTier.DIRECT
    assert outcome.notifications_sent == 1
    assert len(sink.posts) == 1
    assert await _log_rows(session_factory, outcome.delivery_id) == [
        ("all_tiers", "started"),
        ("queue", "failed"),
        ("direct", "success"),
    ]


@pytest.mark.asyncio
async def test_queue_submit_is_time_bounded(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, queue=HangingQueue())
    outcome = await runtime.orchestrator.guarantee_delivery(crm_event())
    assert outcome.tier is DeliveryTier.DIRECT


@pytest.mark.asyncio
async def test_missing_queue_goes_straight_to_direct(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings)
    outcome = await runtime.orchestrator.guarantee_delivery(crm_event())
    assert outcome.tier is DeliveryTier.DIRECT


@pytest.mark.asyncio
async def test_failed_direct_send_schedules_batch(session_factory, relay_settings) -> None:
    seeded = await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, sink=FakeChatSink(fail_status=500))
    before = datetime.now(timezone.utc)

    outcome = await runtime.orchestrator.guarantee_delivery(crm_event(), priority=3)

    assert outcome.success
    assert outcome.tier is DeliveryTier.BATCH
    assert outcome.state is DeliveryState.TIER3_BATCH_SCHEDULED
    item = await load_item(session_factory, outcome.detail["queue_item_id"])
    assert (item.status, item.tier, item.priority) == ("pending", "batch", 3)
    assert item.tenant_id == seeded["tenant_id"]
    assert item.payload_json["event"] == "deal.added"
    assert item.scheduled_for >= before + timedelta(seconds=relay_settings.batch_delay_s)
    assert await _log_rows(session_factory, outcome.delivery_id) == [
        ("all_tiers", "started"),
        ("queue", "failed"),
        ("direct", "failed"),
        ("batch", "queued_batch"),
    ]


@pytest.mark.asyncio
async def test_crashing_direct_tier_escalates_to_batch(session_factory, relay_settings, monkeypatch) -> None:
    runtime = make_runtime(session_factory, relay_settings)

    async def _boom(event, *, delivery_id=None):
        raise RuntimeError("resolver exploded")

    monkeypatch.setattr(runtime.pipeline, "process", _boom)
    outcome = await runtime.orchestrator.guarantee_delivery(crm_event())
    assert outcome.tier is DeliveryTier.BATCH
    item = await load_item(session_factory, outcome.detail["queue_item_id"])
    assert item.error_message == "resolver exploded"


@pytest.mark.asyncio
async def test_invalid_event_lands_in_manual_recovery(session_factory, relay_settings) -> None:
    runtime = make_runtime(session_factory, relay_settings, queue=FakeQueue())

    outcome = await runtime.orchestrator.guarantee_delivery({"company_id": 1001, "object": {"id": 3}})

    assert not outcome.success
    assert outcome.tier is DeliveryTier.MANUAL
    assert outcome.state is DeliveryState.TIER4_MANUAL
    item = await load_item(session_factory, outcome.detail["queue_item_id"])
    assert (item.status, item.tier) == ("manual_recovery", "manual")
    assert item.company_id == "1001"
    assert item.payload_json == {"company_id": 1001, "object": {"id": 3}}
    assert "ValidationError" in (item.error_message or "")


@pytest.mark.asyncio
async def test_store_outage_writes_critical_log(session_factory, relay_settings, tmp_path) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, sink=FakeChatSink(fail_status=500))

    def _broken_factory():
        raise ConnectionRefusedError("database unavailable")

    critical_log = CriticalFailureLog(tmp_path / "critical.log")
    orchestrator = DeliveryOrchestrator(
        session_factory=_broken_factory,
        pipeline=runtime.pipeline,
        queue=FailingQueue(),
        critical_log=critical_log,
        settings=relay_settings,
    )

    outcome = await orchestrator.guarantee_delivery(crm_event())

    assert not outcome.success
    assert outcome.tier is DeliveryTier.MANUAL
    assert outcome.detail["critical_log"] == str(critical_log.path)
    entries = critical_log.read_entries()
    assert len(entries) == 1
    assert entries[0]["delivery_id"] == outcome.delivery_id
    assert entries[0]["event"]["event"] == "deal.added"
    assert "ConnectionRefusedError" in entries[0]["persistence_error"]


@pytest.mark.asyncio
async def test_batch_sweep_completes_due_items_only(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    due = await seed_queue_items(session_factory, count=2, status="pending")
    later = await seed_queue_items(
        session_factory, count=1, status="pending", scheduled_in=timedelta(hours=1)
    )

    stats = await runtime.orchestrator.process_batch_queue()

    assert stats["processed"] == 2
    assert stats["completed"] == 2
    for item_id in due:
        item = await load_item(session_factory, item_id)
        assert item.status == "completed"
        assert item.processed_at is not None
        assert item.notifications_sent == 1
    assert (await load_item(session_factory, later[0])).status == "pending"
    assert len(sink.posts) == 2


@pytest.mark.asyncio
async def test_batch_failure_counts_a_retry(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, sink=FakeChatSink(fail_status=500))
    [item_id] = await seed_queue_items(session_factory, count=1, status="pending", retry_count=1)

    stats = await runtime.orchestrator.process_batch_queue()

    assert stats["failed"] == 1
    item = await load_item(session_factory, item_id)
    assert (item.status, item.retry_count) == ("failed", 2)
    assert item.error_message


@pytest.mark.asyncio
async def test_malformed_batch_payload_is_parked_at_retry_ceiling(session_factory, relay_settings) -> None:
    runtime = make_runtime(session_factory, relay_settings)
    [item_id] = await seed_queue_items(session_factory, count=1, status="pending", payload=None)

    stats = await runtime.orchestrator.process_batch_queue()

    assert stats["malformed"] == 1
    item = await load_item(session_factory, item_id)
    ceiling = max(relay_settings.healing_max_auto_retries, relay_settings.retry_failed_max_retries)
    assert (item.status, item.retry_count) == ("failed", ceiling)
    retried = await runtime.orchestrator.retry_failed(limit=10)
    assert retried["attempted"] == 0


@pytest.mark.asyncio
async def test_replay_crash_parks_item_in_error(session_factory, relay_settings, monkeypatch) -> None:
    runtime = make_runtime(session_factory, relay_settings)
    [item_id] = await seed_queue_items(session_factory, count=1, status="pending")

    async def _boom(event, *, delivery_id=None):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(runtime.pipeline, "process", _boom)
    stats = await runtime.orchestrator.process_batch_queue()
    assert stats["errors"] == 1
    item = await load_item(session_factory, item_id)
    assert item.status == "error"
    assert "renderer crashed" in (item.error_message or "")


@pytest.mark.asyncio
async def test_retry_failed_replays_failed_and_manual_items(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings)
    [failed_id] = await seed_queue_items(session_factory, count=1, status="failed", retry_count=0)
    [manual_id] = await seed_queue_items(session_factory, count=1, status="manual_recovery", tier="manual")
    [capped_id] = await seed_queue_items(
        session_factory, count=1, status="failed", retry_count=relay_settings.retry_failed_max_retries
    )

    result = await runtime.orchestrator.retry_failed(limit=10)

    assert result["attempted"] == 2
    assert result["completed"] == 2
    assert {entry["id"] for entry in result["items"]} == {failed_id, manual_id}
    failed_item = await load_item(session_factory, failed_id)
    assert (failed_item.status, failed_item.retry_count) == ("completed", 1)
    assert (await load_item(session_factory, manual_id)).status == "completed"
    assert (await load_item(session_factory, capped_id)).status == "failed"


@pytest.mark.asyncio
async def test_retry_failed_counts_each_attempt_once(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, sink=FakeChatSink(fail_status=500))
    [failed_id] = await seed_queue_items(session_factory, count=1, status="failed", retry_count=2)
    [manual_id] = await seed_queue_items(session_factory, count=1, status="manual_recovery", tier="manual")

    result = await runtime.orchestrator.retry_failed(limit=10)

    assert result["failed"] == 2
    assert (await load_item(session_factory, failed_id)).retry_count == 3
    manual_item = await load_item(session_factory, manual_id)
    assert (manual_item.status, manual_item.retry_count) == ("failed", 1)


@pytest.mark.asyncio
async def test_delivery_stats_summarize_outcomes(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    runtime = make_runtime(session_factory, relay_settings, queue=FailingQueue())
    await runtime.orchestrator.guarantee_delivery(crm_event(object_id=1))
    await runtime.orchestrator.guarantee_delivery({"object": {"id": 2}})

    stats = await runtime.orchestrator.get_delivery_stats(hours=1)

    summary = stats["summary"]
    # Outcome rows: queue failed, direct success, manual recovery.
    assert summary["total_deliveries"] == 3
    assert summary["successful"] == 1
    assert summary["failed"] == 1
    assert summary["manual_recovery"] == 1
    assert summary["success_rate"] == pytest.approx(33.33)
    assert stats["queue"]["manual_recovery"] == 1
    tiers = {(row["tier"], row["status"]) for row in stats["breakdown"]}
    assert ("direct", "success") in tiers
    assert ("all_tiers", "started") in tiers



class _SlowSink(FakeChatSink):
    async def post(self, address, message):
        await asyncio.sleep(1)
        return await super().post(address, message)


@pytest.mark.asyncio
async def test_replay_timeout_is_a_retryable_failure(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    settings = relay_settings.model_copy(update={"direct_delivery_timeout_ms": 100})
    runtime = make_runtime(session_factory, settings, sink=_SlowSink())
    [item_id] = await seed_queue_items(session_factory, count=1, status="pending")

    stats = await runtime.orchestrator.process_batch_queue()

    assert (stats["failed"], stats["errors"]) == (1, 0)
    item = await load_item(session_factory, item_id)
    assert (item.status, item.retry_count) == ("failed", 1)
    assert item.error_message == "direct delivery timed out"


@pytest.mark.asyncio
async def test_concurrent_batch_sweeps_send_each_row_once(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    ids = await seed_queue_items(session_factory, count=5, status="pending")

    first, second = await asyncio.gather(
        runtime.orchestrator.process_batch_queue(),
        runtime.orchestrator.process_batch_queue(),
    )

    assert first["processed"] + second["processed"] == 5
    assert first["completed"] + second["completed"] == 5
    for item_id in ids:
        assert (await load_item(session_factory, item_id)).status == "completed"
    assert len(sink.posts) == 5


@pytest.mark.asyncio
async def test_emergency_heal_and_operator_retry_race_sends_each_row_once(session_factory, relay_settings) -> None:
    await seed_tenant(session_factory)
    sink = FakeChatSink()
    runtime = make_runtime(session_factory, relay_settings, sink=sink)
    ids = await seed_queue_items(session_factory, count=4, status="failed")

    healed, retried = await asyncio.gather(
        runtime.monitor.run_emergency_heal(),
        runtime.orchestrator.retry_failed(limit=10),
    )

    assert healed["batch"]["processed"] + retried["attempted"] == 4
    assert healed["batch"]["completed"] + retried["completed"] == 4
    for item_id in ids:
        item = await load_item(session_factory, item_id)
        assert (item.status, item.retry_count) == ("completed", 1)
    assert len(sink.posts) == 4

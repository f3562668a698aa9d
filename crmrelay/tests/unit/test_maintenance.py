from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from crmrelay.domain.models import DeliveryLogEntry, DeliveryQueueItem
from crmrelay.services import maintenance
from crmrelay.tests.utils.fakes import load_item, seed_queue_items


async def _seed_log(session_factory, *, count: int, age: timedelta) -> None:
    created_at = datetime.now(timezone.utc) - age
    async with session_factory() as session:
        for index in range(count):
            session.add(
                DeliveryLogEntry(
                    delivery_id=f"del_old_{index}",
                    tier="direct",
                    status="success",
                    created_at=created_at,
                )
            )
        await session.commit()


async def _count_log(session_factory) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count(DeliveryLogEntry.id))))


def test_retry_ceiling_is_highest_cap(relay_settings) -> None:
    settings = relay_settings.model_copy(update={"healing_max_auto_retries": 7, "retry_failed_max_retries": 5})
    assert maintenance.retry_ceiling(settings) == 7


@pytest.mark.asyncio
async def test_prune_delivery_log_honours_retention_in_batches(session_factory, relay_settings) -> None:
    settings = relay_settings.model_copy(update={"delivery_log_purge_batch_size": 2})
    await _seed_log(session_factory, count=5, age=timedelta(days=91))
    await _seed_log(session_factory, count=2, age=timedelta(days=1))

    async with session_factory() as session:
        deleted = await maintenance.prune_delivery_log(session, max_batches=2, settings=settings)
    assert deleted == 4
    assert await _count_log(session_factory) == 3

    async with session_factory() as session:
        deleted = await maintenance.prune_delivery_log(session, settings=settings)
    assert deleted == 1
    assert await _count_log(session_factory) == 2


@pytest.mark.asyncio
async def test_prune_completed_queue_keeps_unfinished_rows(session_factory, relay_settings) -> None:
    [old_done] = await seed_queue_items(session_factory, count=1, status="completed")
    [recent_done] = await seed_queue_items(session_factory, count=1, status="completed")
    [old_failed] = await seed_queue_items(session_factory, count=1, status="failed", age=timedelta(days=60))
    async with session_factory() as session:
        await session.execute(
            update(DeliveryQueueItem)
            .where(DeliveryQueueItem.id == old_done)
            .values(processed_at=datetime.now(timezone.utc) - timedelta(days=31))
        )
        await session.execute(
            update(DeliveryQueueItem)
            .where(DeliveryQueueItem.id == recent_done)
            .values(processed_at=datetime.now(timezone.utc) - timedelta(days=2))
        )
        await session.commit()

    async with session_factory() as session:
        deleted = await maintenance.prune_completed_queue(session, settings=relay_settings)
        remaining = set((await session.execute(select(DeliveryQueueItem.id))).scalars().all())

    assert deleted == 1
    assert remaining == {recent_done, old_failed}


@pytest.mark.asyncio
async def test_quarantine_moves_unreplayable_rows_to_failed(session_factory, relay_settings) -> None:
    [good] = await seed_queue_items(session_factory, count=1, status="pending")
    [missing_event] = await seed_queue_items(
        session_factory, count=1, status="manual_recovery", tier="manual", payload={"company_id": "1"}
    )
    [not_an_object] = await seed_queue_items(session_factory, count=1, status="pending", payload=["deal"])

    async with session_factory() as session:
        quarantined = await maintenance.quarantine_malformed(session, settings=relay_settings)

    assert set(quarantined) == {missing_event, not_an_object}
    assert (await load_item(session_factory, good)).status == "pending"
    item = await load_item(session_factory, not_an_object)
    assert (item.status, item.retry_count) == ("failed", maintenance.retry_ceiling(relay_settings))


@pytest.mark.asyncio
async def test_run_maintenance_task_dispatches_by_name(session_factory) -> None:
    await seed_queue_items(session_factory, count=1, status="pending", payload=None)
    async with session_factory() as session:
        assert await maintenance.run_maintenance_task(session, "quarantine_malformed") == 1
        assert await maintenance.run_maintenance_task(session, "prune_delivery_log") == 0
        with pytest.raises(ValueError, match="unknown maintenance task"):
            await maintenance.run_maintenance_task(session, "vacuum")  # type: ignore[arg-type]

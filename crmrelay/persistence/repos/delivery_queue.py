from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.core.errors import IllegalQueueTransitionError
from crmrelay.domain.models import DeliveryQueueItem
from crmrelay.domain.state import (
    RETRY_EDGE,
    DeliveryTier,
    QueueStatus,
    check_queue_transition,
)


async def insert_queue_item(
    session: AsyncSession,
    *,
    delivery_id: str,
    payload: Any,
    status: QueueStatus,
    tier: DeliveryTier,
    scheduled_for: datetime,
    event_type: str | None = None,
    company_id: str | None = None,
    tenant_id: str | None = None,
    priority: int = 5,
    error_message: str | None = None,
) -> DeliveryQueueItem:
    # New rows only ever start in an entry status.
    if status not in {QueueStatus.PENDING, QueueStatus.MANUAL_RECOVERY}:
        raise IllegalQueueTransitionError(f"queue items cannot be created as {status.value}")
    item = DeliveryQueueItem(
        id=f"dq_{uuid4().hex}",
        delivery_id=delivery_id,
        tenant_id=tenant_id,
        event_type=event_type,
        company_id=company_id,
        payload_json=payload,
        status=status.value,
        tier=tier.value,
        priority=priority,
        retry_count=0,
        scheduled_for=scheduled_for,
        error_message=error_message,
    )
    session.add(item)
    await session.flush()
    return item


def _validate_sources(source: QueueStatus | Iterable[QueueStatus], target: QueueStatus) -> list[str]:
    sources = [source] if isinstance(source, QueueStatus) else list(source)
    for status in sources:
        if (status, target) == RETRY_EDGE:
            raise IllegalQueueTransitionError("failed -> pending must go through requeue_failed_items")
        check_queue_transition(status, target)
    return [status.value for status in sources]


async def transition_queue_items(
    session: AsyncSession,
    *,
    source: QueueStatus | Iterable[QueueStatus],
    target: QueueStatus,
    where: Iterable[Any] = (),
    values: dict[str, Any] | None = None,
) -> int:
    # Conditional update: rows whose status moved underneath us are left alone.
    source_values = _validate_sources(source, target)
    stmt = (
        update(DeliveryQueueItem)
        .where(DeliveryQueueItem.status.in_(source_values), *where)
        .values(status=target.value, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def transition_queue_item(
    session: AsyncSession,
    item_id: str,
    *,
    source: QueueStatus | Iterable[QueueStatus],
    target: QueueStatus,
    values: dict[str, Any] | None = None,
) -> bool:
    updated = await transition_queue_items(
        session,
        source=source,
        target=target,
        where=[DeliveryQueueItem.id == item_id],
        values=values,
    )
    return updated == 1


async def requeue_failed_items(
    session: AsyncSession,
    *,
    retry_cap: int,
    now: datetime,
    created_after: datetime | None = None,
    item_ids: Iterable[str] | None = None,
) -> int:
    # The single backwards edge; the cap guard bounds how often any row can take it.
    # Requeued rows rejoin the batch tier so the sweep picks them up whatever tier failed them.
    stmt = update(DeliveryQueueItem).where(
        DeliveryQueueItem.status == QueueStatus.FAILED.value,
        DeliveryQueueItem.retry_count < retry_cap,
    )
    if created_after is not None:
        stmt = stmt.where(DeliveryQueueItem.created_at > created_after)
    if item_ids is not None:
        stmt = stmt.where(DeliveryQueueItem.id.in_(list(item_ids)))
    stmt = stmt.values(
        status=QueueStatus.PENDING.value,
        tier=DeliveryTier.BATCH.value,
        scheduled_for=now,
        retry_count=DeliveryQueueItem.retry_count + 1,
    ).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def reschedule_stale_pending(session: AsyncSession, *, created_before: datetime, now: datetime) -> int:
    # Pull long-waiting rows forward; status is untouched.
    result = await session.execute(
        update(DeliveryQueueItem)
        .where(
            DeliveryQueueItem.status == QueueStatus.PENDING.value,
            DeliveryQueueItem.created_at < created_before,
            DeliveryQueueItem.scheduled_for < now,
        )
        .values(scheduled_for=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_due_batch_ids(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    result = await session.execute(
        select(DeliveryQueueItem.id)
        .where(
            DeliveryQueueItem.status == QueueStatus.PENDING.value,
            DeliveryQueueItem.tier == DeliveryTier.BATCH.value,
            DeliveryQueueItem.scheduled_for <= now,
        )
        .order_by(DeliveryQueueItem.scheduled_for.asc(), DeliveryQueueItem.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_retry_candidate_ids(session: AsyncSession, *, retry_cap: int, limit: int) -> list[str]:
    # Operator retry picks failed rows under the cap and every manual-recovery row.
    result = await session.execute(
        select(DeliveryQueueItem.id)
        .where(
            DeliveryQueueItem.status.in_([QueueStatus.FAILED.value, QueueStatus.MANUAL_RECOVERY.value]),
            DeliveryQueueItem.retry_count < retry_cap,
        )
        .order_by(DeliveryQueueItem.created_at.desc(), DeliveryQueueItem.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_items_by_status(
    session: AsyncSession,
    *,
    statuses: Iterable[QueueStatus],
    limit: int,
) -> list[DeliveryQueueItem]:
    result = await session.execute(
        select(DeliveryQueueItem)
        .where(DeliveryQueueItem.status.in_([status.value for status in statuses]))
        .order_by(DeliveryQueueItem.created_at.asc(), DeliveryQueueItem.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_items(
    session: AsyncSession,
    *,
    status: QueueStatus,
    tier: DeliveryTier | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
) -> int:
    stmt = select(func.count(DeliveryQueueItem.id)).where(DeliveryQueueItem.status == status.value)
    if tier is not None:
        stmt = stmt.where(DeliveryQueueItem.tier == tier.value)
    if created_after is not None:
        stmt = stmt.where(DeliveryQueueItem.created_at > created_after)
    if created_before is not None:
        stmt = stmt.where(DeliveryQueueItem.created_at < created_before)
    return int(await session.scalar(stmt) or 0)


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(DeliveryQueueItem.status, func.count(DeliveryQueueItem.id)).group_by(DeliveryQueueItem.status)
    )
    counts = {status.value: 0 for status in QueueStatus}
    for status, count in result.all():
        counts[str(status)] = int(count)
    return counts


async def purge_completed_before(session: AsyncSession, *, cutoff: datetime, batch_size: int) -> int:
    # Retention is the only path that removes queue rows, and only finished ones.
    batch = (
        select(DeliveryQueueItem.id)
        .where(
            DeliveryQueueItem.status == QueueStatus.COMPLETED.value,
            DeliveryQueueItem.processed_at < cutoff,
        )
        .order_by(DeliveryQueueItem.processed_at.asc())
        .limit(batch_size)
    )
    result = await session.execute(
        delete(DeliveryQueueItem)
        .where(DeliveryQueueItem.id.in_(batch))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)

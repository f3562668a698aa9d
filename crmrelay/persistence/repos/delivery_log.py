from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.models import DeliveryLogEntry, NotificationLog


OUTCOME_STATUSES = ("success", "failed", "queued_batch", "manual_recovery")


async def append_entry(
    session: AsyncSession,
    *,
    delivery_id: str,
    tier: str,
    status: str,
    tenant_id: str | None = None,
    company_id: str | None = None,
    event_type: str | None = None,
    result: dict[str, Any] | None = None,
    processing_time_ms: int | None = None,
) -> DeliveryLogEntry:
    entry = DeliveryLogEntry(
        delivery_id=delivery_id,
        tier=tier,
        status=status,
        tenant_id=tenant_id,
        company_id=company_id,
        event_type=event_type,
        result_json=result,
        processing_time_ms=processing_time_ms,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(session: AsyncSession, *, delivery_id: str) -> list[DeliveryLogEntry]:
    result = await session.execute(
        select(DeliveryLogEntry)
        .where(DeliveryLogEntry.delivery_id == delivery_id)
        .order_by(DeliveryLogEntry.id.asc())
    )
    return list(result.scalars().all())


async def tier_status_breakdown(session: AsyncSession, *, since: datetime) -> list[dict[str, Any]]:
    result = await session.execute(
        select(
            DeliveryLogEntry.tier,
            DeliveryLogEntry.status,
            func.count(DeliveryLogEntry.id),
            func.avg(DeliveryLogEntry.processing_time_ms),
        )
        .where(DeliveryLogEntry.created_at > since)
        .group_by(DeliveryLogEntry.tier, DeliveryLogEntry.status)
        .order_by(DeliveryLogEntry.tier.asc(), DeliveryLogEntry.status.asc())
    )
    return [
        {
            "tier": tier,
            "status": status,
            "count": int(count),
            "avg_processing_time_ms": round(float(avg), 2) if avg is not None else None,
        }
        for tier, status, count, avg in result.all()
    ]


async def outcome_summary(session: AsyncSession, *, since: datetime) -> dict[str, Any]:
    # `started` rows are progress markers, not outcomes, so they stay out of the rates.
    result = await session.execute(
        select(
            func.count(DeliveryLogEntry.id),
            func.sum(case((DeliveryLogEntry.status == "success", 1), else_=0)),
            func.sum(case((DeliveryLogEntry.status == "failed", 1), else_=0)),
            func.sum(case((DeliveryLogEntry.status == "queued_batch", 1), else_=0)),
            func.sum(case((DeliveryLogEntry.status == "manual_recovery", 1), else_=0)),
            func.avg(case((DeliveryLogEntry.status == "success", DeliveryLogEntry.processing_time_ms))),
        ).where(
            DeliveryLogEntry.created_at > since,
            DeliveryLogEntry.status.in_(OUTCOME_STATUSES),
        )
    )
    total, successful, failed, queued_batch, manual, avg_latency = result.one()
    total = int(total or 0)
    successful = int(successful or 0)
    return {
        "total": total,
        "successful": successful,
        "failed": int(failed or 0),
        "queued_batch": int(queued_batch or 0),
        "manual_recovery": int(manual or 0),
        "success_rate": round(successful / total * 100.0, 2) if total else None,
        "avg_processing_time_ms": round(float(avg_latency), 2) if avg_latency is not None else None,
    }


async def company_id_votes(
    session: AsyncSession,
    *,
    tenant_id: str,
    since: datetime,
) -> list[tuple[str, int]]:
    # Company ids seen on this tenant's deliveries, most frequent first.
    result = await session.execute(
        select(DeliveryLogEntry.company_id, func.count(DeliveryLogEntry.id).label("votes"))
        .where(
            DeliveryLogEntry.tenant_id == tenant_id,
            DeliveryLogEntry.company_id.is_not(None),
            DeliveryLogEntry.created_at > since,
        )
        .group_by(DeliveryLogEntry.company_id)
        .order_by(func.count(DeliveryLogEntry.id).desc(), DeliveryLogEntry.company_id.asc())
    )
    return [(str(company_id), int(votes)) for company_id, votes in result.all()]


async def purge_entries_before(session: AsyncSession, *, cutoff: datetime, batch_size: int) -> int:
    # Delete one bounded batch; callers loop and commit between batches.
    batch = (
        select(DeliveryLogEntry.id)
        .where(DeliveryLogEntry.created_at < cutoff)
        .order_by(DeliveryLogEntry.id.asc())
        .limit(batch_size)
    )
    result = await session.execute(
        delete(DeliveryLogEntry)
        .where(DeliveryLogEntry.id.in_(batch))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def append_notification_log(
    session: AsyncSession,
    *,
    tenant_id: str,
    rule_id: str,
    endpoint_id: str | None,
    delivery_id: str | None,
    event_type: str,
    status: str,
    response_code: int | None = None,
    error_message: str | None = None,
    response_time_ms: int | None = None,
) -> NotificationLog:
    row = NotificationLog(
        tenant_id=tenant_id,
        rule_id=rule_id,
        endpoint_id=endpoint_id,
        delivery_id=delivery_id,
        event_type=event_type,
        status=status,
        response_code=response_code,
        error_message=error_message,
        response_time_ms=response_time_ms,
    )
    session.add(row)
    await session.flush()
    return row

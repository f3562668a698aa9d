from __future__ import annotations

from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.models import ChannelEndpoint, Rule


async def list_enabled_rules(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_types: Iterable[str],
) -> list[Rule]:
    # Stable ordering keeps rule evaluation deterministic across runs.
    patterns = sorted({pattern.lower() for pattern in event_types})
    if not patterns:
        return []
    result = await session.execute(
        select(Rule)
        .where(
            Rule.tenant_id == tenant_id,
            Rule.enabled.is_(True),
            func.lower(Rule.event_type).in_(patterns),
        )
        .order_by(Rule.priority.asc(), Rule.created_at.asc(), Rule.id.asc())
    )
    return list(result.scalars().all())


async def count_enabled_rules(session: AsyncSession, *, tenant_id: str) -> int:
    value = await session.scalar(
        select(func.count(Rule.id)).where(Rule.tenant_id == tenant_id, Rule.enabled.is_(True))
    )
    return int(value or 0)


async def list_active_endpoints(session: AsyncSession, *, tenant_id: str) -> list[ChannelEndpoint]:
    result = await session.execute(
        select(ChannelEndpoint)
        .where(ChannelEndpoint.tenant_id == tenant_id, ChannelEndpoint.is_active.is_(True))
        .order_by(ChannelEndpoint.created_at.asc(), ChannelEndpoint.id.asc())
    )
    return list(result.scalars().all())


async def count_active_endpoints(session: AsyncSession, *, tenant_id: str) -> int:
    value = await session.scalar(
        select(func.count(ChannelEndpoint.id)).where(
            ChannelEndpoint.tenant_id == tenant_id, ChannelEndpoint.is_active.is_(True)
        )
    )
    return int(value or 0)


async def reassign_tenant_config(session: AsyncSession, *, from_tenant_id: str, to_tenant_id: str) -> dict[str, int]:
    # Move rules and endpoints wholesale; used only by explicit tenant consolidation.
    rules = await session.execute(
        update(Rule)
        .where(Rule.tenant_id == from_tenant_id)
        .values(tenant_id=to_tenant_id)
        .execution_options(synchronize_session=False)
    )
    endpoints = await session.execute(
        update(ChannelEndpoint)
        .where(ChannelEndpoint.tenant_id == from_tenant_id)
        .values(tenant_id=to_tenant_id)
        .execution_options(synchronize_session=False)
    )
    return {"rules": int(rules.rowcount or 0), "endpoints": int(endpoints.rowcount or 0)}

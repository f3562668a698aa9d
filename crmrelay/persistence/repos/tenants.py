from __future__ import annotations

from uuid import uuid4

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.models import ChannelEndpoint, Rule, Tenant


def _has_enabled_rule():
    return exists().where(Rule.tenant_id == Tenant.id, Rule.enabled.is_(True))


def _has_active_endpoint():
    return exists().where(ChannelEndpoint.tenant_id == Tenant.id, ChannelEndpoint.is_active.is_(True))


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def get_by_company_id(session: AsyncSession, company_id: str) -> Tenant | None:
    # Earliest binding wins when duplicates exist; duplicates are surfaced by the watchdog.
    result = await session.execute(
        select(Tenant)
        .where(Tenant.external_company_id == company_id)
        .order_by(Tenant.created_at.asc(), Tenant.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_user_id(session: AsyncSession, user_id: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant)
        .where(Tenant.external_user_id == user_id)
        .order_by(Tenant.created_at.asc(), Tenant.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_adoptable_tenant(session: AsyncSession) -> Tenant | None:
    # Unmapped tenants that are already configured to notify are adoption candidates.
    result = await session.execute(
        select(Tenant)
        .where(Tenant.external_company_id.is_(None), _has_enabled_rule(), _has_active_endpoint())
        .order_by(Tenant.created_at.asc(), Tenant.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    company_id: str | None = None,
    user_id: str | None = None,
    timezone_name: str = "UTC",
    auto_mapped: bool = False,
) -> Tenant:
    tenant = Tenant(
        id=f"tnt_{uuid4().hex}",
        name=name,
        external_company_id=company_id,
        external_user_id=user_id,
        timezone=timezone_name,
        settings_json={},
        auto_mapped=auto_mapped,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def bind_company_id(session: AsyncSession, *, tenant_id: str, company_id: str) -> bool:
    # Only bind tenants that are still unmapped so an existing binding is never overwritten.
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.external_company_id.is_(None))
        .values(external_company_id=company_id, auto_mapped=True)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_unmapped_tenants_with_rules(session: AsyncSession, *, limit: int = 100) -> list[Tenant]:
    result = await session.execute(
        select(Tenant)
        .where(Tenant.external_company_id.is_(None), _has_enabled_rule())
        .order_by(Tenant.created_at.asc(), Tenant.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_tenants_with_enabled_rules(session: AsyncSession, *, limit: int) -> list[Tenant]:
    result = await session.execute(
        select(Tenant).where(_has_enabled_rule()).order_by(Tenant.created_at.asc(), Tenant.id.asc()).limit(limit)
    )
    return list(result.scalars().all())


async def find_duplicate_company_mappings(session: AsyncSession) -> dict[str, list[str]]:
    # Map each company id bound to more than one tenant to those tenant ids, oldest first.
    duplicated = (
        select(Tenant.external_company_id)
        .where(Tenant.external_company_id.is_not(None))
        .group_by(Tenant.external_company_id)
        .having(func.count(Tenant.id) > 1)
    )
    result = await session.execute(
        select(Tenant.external_company_id, Tenant.id)
        .where(Tenant.external_company_id.in_(duplicated))
        .order_by(Tenant.external_company_id.asc(), Tenant.created_at.asc(), Tenant.id.asc())
    )
    mappings: dict[str, list[str]] = {}
    for company_id, tenant_id in result.all():
        mappings.setdefault(company_id, []).append(tenant_id)
    return mappings


async def count_tenants(session: AsyncSession) -> dict[str, int]:
    total = await session.scalar(select(func.count(Tenant.id)))
    mapped = await session.scalar(select(func.count(Tenant.id)).where(Tenant.external_company_id.is_not(None)))
    auto_mapped = await session.scalar(select(func.count(Tenant.id)).where(Tenant.auto_mapped.is_(True)))
    return {
        "total": int(total or 0),
        "mapped": int(mapped or 0),
        "unmapped": int(total or 0) - int(mapped or 0),
        "auto_mapped": int(auto_mapped or 0),
    }

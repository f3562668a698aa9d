from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from crmrelay.core.errors import NoTenantFoundError
from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import DeliveryLogEntry, Tenant
from crmrelay.persistence.repos import tenants as tenants_repo
from crmrelay.services.tenancy.admin import consolidate_duplicate_tenants, get_tenant_stats
from crmrelay.services.tenancy.resolver import TenantResolver
from crmrelay.services.tenancy.strategies import MajorityVoteMapping
from crmrelay.tests.utils.fakes import seed_tenant


def _event(**fields: object) -> CrmEvent:
    return CrmEvent.model_validate({"event": "deal.added", **fields})


@pytest.mark.asyncio
async def test_direct_mapping_wins(session_factory) -> None:
    seeded = await seed_tenant(session_factory, company_id="1001")
    resolver = TenantResolver(session_factory=session_factory)
    resolution = await resolver.resolve(_event(company_id=1001))
    assert resolution.tenant_id == seeded["tenant_id"]
    assert resolution.strategy == "direct_mapping"


@pytest.mark.asyncio
async def test_user_binding_binds_company_id(session_factory) -> None:
    seeded = await seed_tenant(session_factory, company_id=None, user_id="77")
    resolver = TenantResolver(session_factory=session_factory)
    resolution = await resolver.resolve(_event(company_id="2002", user_id=77))
    assert resolution.tenant_id == seeded["tenant_id"]
    assert resolution.strategy == "user_mapping"
    async with session_factory() as session:
        tenant = await tenants_repo.get_tenant(session, seeded["tenant_id"])
        assert tenant is not None
        assert tenant.external_company_id == "2002"
        assert tenant.auto_mapped is True


@pytest.mark.asyncio
async def test_unmapped_configured_tenant_is_adopted(session_factory) -> None:
    seeded = await seed_tenant(session_factory, company_id=None)
    resolver = TenantResolver(session_factory=session_factory)
    resolution = await resolver.resolve(_event(company_id="3003"))
    assert resolution.tenant_id == seeded["tenant_id"]
    assert resolution.strategy == "active_tenant_adoption"


@pytest.mark.asyncio
async def test_unknown_company_provisions_new_tenant(session_factory) -> None:
    resolver = TenantResolver(session_factory=session_factory)
    resolution = await resolver.resolve(_event(company_id="4004", company={"name": "Globex"}))
    assert resolution.strategy == "new_tenant"
    assert resolution.name == "Globex"
    again = await resolver.resolve(_event(company_id="4004"))
    assert again.tenant_id == resolution.tenant_id
    assert again.strategy == "direct_mapping"


@pytest.mark.asyncio
async def test_missing_company_and_user_raises(session_factory) -> None:
    resolver = TenantResolver(session_factory=session_factory)
    with pytest.raises(NoTenantFoundError):
        await resolver.resolve(_event())


@pytest.mark.asyncio
async def test_concurrent_resolutions_create_one_tenant(session_factory) -> None:
    resolver = TenantResolver(session_factory=session_factory)
    results = await asyncio.gather(*[resolver.resolve(_event(company_id="5005")) for _ in range(5)])
    assert len({result.tenant_id for result in results}) == 1
    async with session_factory() as session:
        count = await session.scalar(
            select(func.count(Tenant.id)).where(Tenant.external_company_id == "5005")
        )
    assert count == 1


@pytest.mark.asyncio
async def test_majority_vote_requires_strict_majority(session_factory) -> None:
    seeded = await seed_tenant(session_factory, company_id=None)
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        for company_id in ("a", "a", "b", "b"):
            session.add(
                DeliveryLogEntry(
                    delivery_id="del_x",
                    tenant_id=seeded["tenant_id"],
                    company_id=company_id,
                    tier="direct",
                    status="success",
                )
            )
        await session.commit()
        tenant = await tenants_repo.get_tenant(session, seeded["tenant_id"])
        assert tenant is not None
        strategy = MajorityVoteMapping()
        assert await strategy.propose(session, tenant=tenant, since=now - timedelta(days=1)) is None
        session.add(
            DeliveryLogEntry(
                delivery_id="del_y",
                tenant_id=seeded["tenant_id"],
                company_id="a",
                tier="direct",
                status="success",
            )
        )
        await session.commit()
        proposal = await strategy.propose(session, tenant=tenant, since=now - timedelta(days=1))
    assert proposal is not None
    assert (proposal.company_id, proposal.votes, proposal.total_votes) == ("a", 3, 5)


@pytest.mark.asyncio
async def test_consolidation_keeps_tenant_with_most_rules(session_factory) -> None:
    first = await seed_tenant(session_factory, company_id="6006")
    second = await seed_tenant(session_factory, company_id="6006")
    async with session_factory() as session:
        stats = await get_tenant_stats(session)
        assert stats["duplicate_company_ids"] == 1
        result = await consolidate_duplicate_tenants(
            session, company_id="6006", keep_tenant_id=second["tenant_id"]
        )
    assert result["consolidated"] is True
    assert result["kept_tenant_id"] == second["tenant_id"]
    assert result["merged_tenants"][first["tenant_id"]] == {"rules": 1, "endpoints": 1}
    async with session_factory() as session:
        assert await tenants_repo.find_duplicate_company_mappings(session) == {}
        again = await consolidate_duplicate_tenants(session, company_id="6006")
    assert again["consolidated"] is False

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.models import Tenant
from crmrelay.persistence.repos import rules as rules_repo
from crmrelay.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)


async def find_duplicate_mappings(session: AsyncSession) -> dict[str, list[str]]:
    return await tenants_repo.find_duplicate_company_mappings(session)


async def get_tenant_stats(session: AsyncSession) -> dict[str, Any]:
    stats = await tenants_repo.count_tenants(session)
    duplicates = await tenants_repo.find_duplicate_company_mappings(session)
    stats["duplicate_company_ids"] = len(duplicates)
    return stats


async def consolidate_duplicate_tenants(
    session: AsyncSession,
    *,
    company_id: str,
    keep_tenant_id: str | None = None,
) -> dict[str, Any]:
    # Explicit operator action: fold every tenant bound to `company_id` into one survivor.
    duplicates = await tenants_repo.find_duplicate_company_mappings(session)
    tenant_ids = duplicates.get(company_id, [])
    if len(tenant_ids) < 2:
        return {"company_id": company_id, "consolidated": False, "reason": "no_duplicates", "kept_tenant_id": None}

    if keep_tenant_id is None:
        # Keep the tenant with the most enabled rules; creation order breaks ties.
        scored = []
        for position, tenant_id in enumerate(tenant_ids):
            rules = await rules_repo.count_enabled_rules(session, tenant_id=tenant_id)
            scored.append((-rules, position, tenant_id))
        keep_tenant_id = min(scored)[2]
    elif keep_tenant_id not in tenant_ids:
        raise ValueError(f"tenant {keep_tenant_id} is not mapped to company {company_id}")

    moved: dict[str, dict[str, int]] = {}
    for tenant_id in tenant_ids:
        if tenant_id == keep_tenant_id:
            continue
        moved[tenant_id] = await rules_repo.reassign_tenant_config(
            session, from_tenant_id=tenant_id, to_tenant_id=keep_tenant_id
        )
        await session.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values(external_company_id=None, auto_mapped=False)
            .execution_options(synchronize_session=False)
        )
    await session.commit()
    logger.warning(
        "tenants_consolidated company_id=%s kept_tenant_id=%s merged=%s",
        company_id,
        keep_tenant_id,
        ",".join(sorted(moved)),
    )
    return {
        "company_id": company_id,
        "consolidated": True,
        "kept_tenant_id": keep_tenant_id,
        "merged_tenants": moved,
    }

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import Tenant
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)


class TenantResolutionStrategy(Protocol):
    # One step of the resolution cascade; returning None hands over to the next step.
    name: str
    # Steps that write bindings run under the per-company mapping lock.
    mutates: bool
    requires_company_id: bool

    async def resolve(self, session: AsyncSession, event: CrmEvent) -> Tenant | None: ...


class TenantProvisioner(Protocol):
    async def provision(self, session: AsyncSession, tenant: Tenant) -> None: ...


class DefaultTenantProvisioner:
    # New tenants start with empty defaults; rules and endpoints arrive through provisioning flows.
    async def provision(self, session: AsyncSession, tenant: Tenant) -> None:
        tenant.settings_json = {"notifications_enabled": True, "rules_seeded": False}
        tenant.timezone = tenant.timezone or "UTC"
        await session.flush()
        logger.info("tenant_provisioned tenant_id=%s company_id=%s", tenant.id, tenant.external_company_id)


class DirectCompanyLookup:
    name = "direct_mapping"
    mutates = False
    requires_company_id = True

    async def resolve(self, session: AsyncSession, event: CrmEvent) -> Tenant | None:
        if not event.company_id:
            return None
        return await tenants_repo.get_by_company_id(session, event.company_id)


class UserBindingStrategy:
    name = "user_mapping"
    mutates = True
    requires_company_id = False

    async def resolve(self, session: AsyncSession, event: CrmEvent) -> Tenant | None:
        if not event.user_id:
            return None
        tenant = await tenants_repo.get_by_user_id(session, event.user_id)
        if tenant is None:
            return None
        if event.company_id and tenant.external_company_id is None:
            if await tenants_repo.bind_company_id(session, tenant_id=tenant.id, company_id=event.company_id):
                await session.refresh(tenant)
                logger.info(
                    "tenant_company_bound tenant_id=%s company_id=%s strategy=%s",
                    tenant.id,
                    event.company_id,
                    self.name,
                )
        return tenant


class AdoptionStrategy:
    name = "active_tenant_adoption"
    mutates = True
    requires_company_id = True

    async def resolve(self, session: AsyncSession, event: CrmEvent) -> Tenant | None:
        if not event.company_id:
            return None
        candidate = await tenants_repo.find_adoptable_tenant(session)
        if candidate is None:
            return None
        if not await tenants_repo.bind_company_id(session, tenant_id=candidate.id, company_id=event.company_id):
            return None
        await session.refresh(candidate)
        logger.info(
            "tenant_company_bound tenant_id=%s company_id=%s strategy=%s",
            candidate.id,
            event.company_id,
            self.name,
        )
        return candidate


class ProvisionStrategy:
    name = "new_tenant"
    mutates = True
    requires_company_id = True

    def __init__(self, provisioner: TenantProvisioner | None = None) -> None:
        self._provisioner = provisioner or DefaultTenantProvisioner()

    async def resolve(self, session: AsyncSession, event: CrmEvent) -> Tenant | None:
        if not event.company_id:
            return None
        tenant = await tenants_repo.create_tenant(
            session,
            name=event.company_name or f"Company {event.company_id}",
            company_id=event.company_id,
            user_id=event.user_id,
            auto_mapped=True,
        )
        await self._provisioner.provision(session, tenant)
        return tenant


def default_strategies(provisioner: TenantProvisioner | None = None) -> list[TenantResolutionStrategy]:
    return [DirectCompanyLookup(), UserBindingStrategy(), AdoptionStrategy(), ProvisionStrategy(provisioner)]


@dataclass(frozen=True)
class MappingProposal:
    tenant_id: str
    company_id: str
    votes: int
    total_votes: int


class MajorityVoteMapping:
    """Propose a company id for an unmapped tenant from its recent deliveries.

    The most frequent company id in the tenant's delivery log wins when it holds
    a strict majority of the votes. Ids already bound to another tenant are
    never proposed, so this strategy cannot create a duplicate mapping.
    """

    name = "majority_vote"

    async def propose(self, session: AsyncSession, *, tenant: Tenant, since: datetime) -> MappingProposal | None:
        votes = await delivery_log_repo.company_id_votes(session, tenant_id=tenant.id, since=since)
        if not votes:
            return None
        total = sum(count for _, count in votes)
        company_id, count = votes[0]
        if count * 2 <= total:
            return None
        owner = await tenants_repo.get_by_company_id(session, company_id)
        if owner is not None and owner.id != tenant.id:
            return None
        return MappingProposal(tenant_id=tenant.id, company_id=company_id, votes=count, total_votes=total)

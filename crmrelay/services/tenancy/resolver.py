from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import Any, AsyncIterator, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmrelay.core.errors import NoTenantFoundError
from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import Tenant
from crmrelay.services.tenancy.strategies import TenantResolutionStrategy, default_strategies


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: str
    strategy: str
    timezone: str
    name: str
    settings: dict[str, Any] = field(default_factory=dict)


class _KeyedLocks:
    # One asyncio.Lock per key, dropped once nobody holds or waits on it.
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)


class TenantResolver:
    """Map an inbound event to an internal tenant.

    Read-only strategies run first without locking. When they miss and the event
    carries a company id, the whole cascade re-runs inside a mapping lock keyed by
    that id: an in-process lock plus a transaction-scoped Postgres advisory lock,
    so concurrent resolutions of one id bind or create exactly one tenant.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        strategies: Sequence[TenantResolutionStrategy] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._strategies = list(strategies) if strategies is not None else default_strategies()
        self._locks = _KeyedLocks()

    @property
    def strategies(self) -> list[TenantResolutionStrategy]:
        return list(self._strategies)

    async def resolve(self, event: CrmEvent) -> TenantResolution:
        async with self._session_factory() as session:
            for strategy in self._strategies:
                if strategy.mutates:
                    continue
                tenant = await strategy.resolve(session, event)
                if tenant is not None:
                    return self._result(tenant, strategy)

            if not event.company_id:
                # Without a company id nothing may be bound or created; user lookup is the last chance.
                for strategy in self._strategies:
                    if strategy.requires_company_id:
                        continue
                    tenant = await strategy.resolve(session, event)
                    if tenant is not None:
                        await session.commit()
                        return self._result(tenant, strategy)
                raise NoTenantFoundError(f"no tenant for event {event.event} without company id")

            await session.rollback()
            async with self.mapping_lock(session, event.company_id):
                for strategy in self._strategies:
                    tenant = await strategy.resolve(session, event)
                    if tenant is not None:
                        resolution = self._result(tenant, strategy)
                        await session.commit()
                        if strategy.mutates:
                            logger.info(
                                "tenant_resolved company_id=%s tenant_id=%s strategy=%s",
                                event.company_id,
                                resolution.tenant_id,
                                strategy.name,
                            )
                        return resolution
                await session.rollback()
        raise NoTenantFoundError(f"no tenant for company {event.company_id}")

    @asynccontextmanager
    async def mapping_lock(self, session: AsyncSession, company_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(company_id):
            if session.get_bind().dialect.name == "postgresql":
                # Released automatically when the surrounding transaction ends.
                await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(f"tenant-map:{company_id}"))))
            yield

    @staticmethod
    def _result(tenant: Tenant, strategy: TenantResolutionStrategy) -> TenantResolution:
        return TenantResolution(
            tenant_id=tenant.id,
            strategy=strategy.name,
            timezone=tenant.timezone or "UTC",
            name=tenant.name,
            settings=dict(tenant.settings_json or {}),
        )

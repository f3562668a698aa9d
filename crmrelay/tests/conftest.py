from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Iterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crmrelay.core.config import Settings, get_settings
from crmrelay.domain.models import Base
from crmrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    # Settings and counters are process-wide caches; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed sqlite so separate sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def relay_settings(tmp_path: Path) -> Settings:
    return Settings(
        critical_failure_log_path=str(tmp_path / "critical-failures.log"),
        chat_send_max_attempts=1,
        chat_send_backoff_ms=0,
        queue_submit_timeout_ms=200,
        direct_delivery_timeout_ms=5000,
        healing_enabled=False,
    )

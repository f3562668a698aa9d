from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.core.config import Settings, get_settings
from crmrelay.core.errors import MalformedPayloadError
from crmrelay.domain.events import parse_stored_event
from crmrelay.domain.state import QueueStatus
from crmrelay.persistence.repos import delivery_log as delivery_log_repo
from crmrelay.persistence.repos import delivery_queue as queue_repo


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "prune_delivery_log",
    "prune_completed_queue",
    "quarantine_malformed",
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_ceiling(settings: Settings | None = None) -> int:
    # Highest retry cap in use; rows at this count are never picked up again.
    settings = settings or get_settings()
    return max(settings.healing_max_auto_retries, settings.retry_failed_max_retries)


async def prune_delivery_log(
    session: AsyncSession,
    *,
    max_batches: int | None = None,
    settings: Settings | None = None,
) -> int:
    # Delete audit rows past retention in bounded batches, committing between batches.
    settings = settings or get_settings()
    cutoff = _utc_now() - timedelta(days=settings.delivery_log_retention_days)
    batches = max_batches if max_batches is not None else settings.delivery_log_purge_max_batches
    deleted = 0
    for _ in range(max(batches, 0)):
        removed = await delivery_log_repo.purge_entries_before(
            session, cutoff=cutoff, batch_size=settings.delivery_log_purge_batch_size
        )
        await session.commit()
        deleted += removed
        if removed < settings.delivery_log_purge_batch_size:
            break
    return deleted


async def prune_completed_queue(session: AsyncSession, *, settings: Settings | None = None) -> int:
    # Only completed rows age out; failed and manual rows stay until an operator resolves them.
    settings = settings or get_settings()
    cutoff = _utc_now() - timedelta(days=settings.queue_retention_days)
    deleted = 0
    while True:
        removed = await queue_repo.purge_completed_before(
            session, cutoff=cutoff, batch_size=settings.delivery_log_purge_batch_size
        )
        await session.commit()
        deleted += removed
        if removed < settings.delivery_log_purge_batch_size:
            return deleted


async def quarantine_malformed(
    session: AsyncSession,
    *,
    limit: int = 500,
    settings: Settings | None = None,
) -> list[str]:
    # Waiting rows whose payload cannot be replayed go to failed at the retry ceiling.
    candidates = await queue_repo.list_items_by_status(
        session,
        statuses=(QueueStatus.PENDING, QueueStatus.MANUAL_RECOVERY),
        limit=limit,
    )
    ceiling = retry_ceiling(settings)
    quarantined: list[str] = []
    for item in candidates:
        try:
            parse_stored_event(item.payload_json)
        except MalformedPayloadError as exc:
            moved = await queue_repo.transition_queue_item(
                session,
                item.id,
                source=(QueueStatus.PENDING, QueueStatus.MANUAL_RECOVERY),
                target=QueueStatus.FAILED,
                values={"error_message": f"malformed payload: {exc}", "retry_count": ceiling},
            )
            if moved:
                quarantined.append(item.id)
    await session.commit()
    if quarantined:
        logger.warning("queue_items_quarantined count=%s ids=%s", len(quarantined), ",".join(quarantined))
    return quarantined


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "prune_delivery_log":
        return await prune_delivery_log(session)
    if task == "prune_completed_queue":
        return await prune_completed_queue(session)
    if task == "quarantine_malformed":
        return len(await quarantine_malformed(session))
    raise ValueError(f"unknown maintenance task: {task}")

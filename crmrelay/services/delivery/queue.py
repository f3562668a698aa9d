from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta
import logging
from typing import Any, Protocol

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from crmrelay.core.config import get_settings
from crmrelay.core.errors import QueueUnavailableError


logger = logging.getLogger(__name__)

PROCESS_EVENT_JOB = "process_crm_event"


@dataclass(frozen=True)
class QueueHints:
    # Carried with the job; the worker applies attempts and backoff, priority is advisory.
    priority: int
    delay_ms: int
    max_attempts: int
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 2000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "QueueHints":
        settings = get_settings()
        raw = raw or {}
        return cls(
            priority=int(raw.get("priority", settings.delivery_default_priority)),
            delay_ms=int(raw.get("delay_ms", 0)),
            max_attempts=int(raw.get("max_attempts", settings.queue_job_max_attempts)),
            backoff_type=str(raw.get("backoff_type", "exponential")),
            backoff_delay_ms=int(raw.get("backoff_delay_ms", settings.queue_job_backoff_ms)),
        )


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    queue_name: str
    # False when the queue already held a job with this id.
    newly_enqueued: bool


class DeliveryQueue(Protocol):
    async def enqueue(self, payload: dict[str, Any], hints: QueueHints, *, job_id: str) -> JobHandle: ...


def build_job_payload(*, event: dict[str, Any], delivery_id: str, hints: QueueHints) -> dict[str, Any]:
    return {"delivery_id": delivery_id, "event": event, "hints": hints.to_dict()}


class ArqDeliveryQueue:
    # Tier 1 adapter over ARQ; the Redis pool is cached per event loop.
    def __init__(self, *, redis_url: str | None = None, queue_name: str | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._queue_name = queue_name or settings.relay_queue_name
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock: asyncio.Lock | None = None

    @property
    def queue_name(self) -> str:
        return self._queue_name

    async def _get_pool(self) -> ArqRedis:
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        if self._lock is None or self._pool_loop != current_loop:
            self._lock = asyncio.Lock()
            self._pool = None
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._redis_url),
                    default_queue_name=self._queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def enqueue(self, payload: dict[str, Any], hints: QueueHints, *, job_id: str) -> JobHandle:
        defer_by = timedelta(milliseconds=max(0, int(hints.delay_ms)))
        try:
            pool = await self._get_pool()
            job = await pool.enqueue_job(
                PROCESS_EVENT_JOB,
                payload,
                _job_id=job_id,
                _queue_name=self._queue_name,
                _defer_by=defer_by if defer_by.total_seconds() > 0 else None,
            )
        except (RedisError, OSError) as exc:
            self._pool = None
            raise QueueUnavailableError(f"queue not connected: {exc}") from exc
        if job is None:
            logger.info("queue_job_already_present job_id=%s queue=%s", job_id, self._queue_name)
        return JobHandle(job_id=job_id, queue_name=self._queue_name, newly_enqueued=job is not None)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

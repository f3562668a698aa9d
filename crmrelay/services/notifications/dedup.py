from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from threading import Lock
import time
from typing import Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupKey:
    tenant_id: str
    rule_id: str
    object_id: str
    event_type: str

    def as_string(self) -> str:
        return f"{self.tenant_id}:{self.rule_id}:{self.object_id}:{self.event_type}"


class Deduplicator:
    """Short-lived suppression of repeat sends.

    Entries live in process memory only. A restart forgets them, which the
    at-least-once contract tolerates. Expired entries are dropped lazily on
    lookup and periodically by the eviction task started with ``start()``.
    """

    def __init__(
        self,
        *,
        window_s: float = 300.0,
        eviction_interval_s: float = 60.0,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._window_s = float(window_s)
        self._eviction_interval_s = max(float(eviction_interval_s), 0.01)
        self._time = time_source or time.monotonic
        self._expires: dict[DedupKey, float] = {}
        self._lock = Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def window_s(self) -> float:
        return self._window_s

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires)

    def _live(self, key: DedupKey, now: float) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._expires[key]
            return False
        return True

    def is_duplicate(self, key: DedupKey) -> bool:
        with self._lock:
            return self._live(key, self._time())

    def claim(self, key: DedupKey) -> bool:
        # Atomically reserve a key; False means an identical send is inside the window.
        with self._lock:
            now = self._time()
            if self._live(key, now):
                return False
            self._expires[key] = now + self._window_s
            return True

    def release(self, key: DedupKey) -> None:
        # Drop a reservation after a failed send so a retry is not suppressed.
        with self._lock:
            self._expires.pop(key, None)

    def evict_expired(self) -> int:
        with self._lock:
            now = self._time()
            expired = [key for key, expires_at in self._expires.items() if expires_at <= now]
            for key in expired:
                del self._expires[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._expires.clear()

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self._eviction_interval_s)
            evicted = self.evict_expired()
            if evicted:
                logger.debug("dedup_evicted count=%s", evicted)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._eviction_loop(), name="dedup-eviction")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

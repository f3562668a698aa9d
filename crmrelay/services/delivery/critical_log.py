from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any


logger = logging.getLogger(__name__)


class CriticalFailureLog:
    # Append-only JSON lines file; the last stop when even the database refuses writes.
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, line: str) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    async def append(self, record: dict[str, Any]) -> bool:
        # Never raises; returns whether the line reached disk.
        entry = {"logged_at": datetime.now(timezone.utc).isoformat(), **record}
        try:
            line = json.dumps(entry, default=str)
        except (TypeError, ValueError):
            line = json.dumps({"logged_at": entry["logged_at"], "unserializable_record": repr(record)})
        logger.critical("critical_delivery_failure %s", line)
        try:
            await asyncio.to_thread(self._write, line)
        except Exception:  # noqa: BLE001 - the terminal fallback must not raise into the caller.
            logger.exception("critical_failure_log_write_failed path=%s", self._path)
            return False
        return True

    def read_entries(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import logging.config
from typing import Any

from crmrelay.core.config import get_settings


_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    # Render records as single-line JSON so shippers do not need multiline parsing.
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    # Install one root handler per process; safe to call more than once.
    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()
    use_json = settings.log_json if json_output is None else json_output
    formatter = (
        {"()": JsonLineFormatter}
        if use_json
        else {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"}
    )
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": resolved_level, "handlers": ["console"]},
            # httpx logs every request at INFO.
            "loggers": {"httpx": {"level": "WARNING"}},
        }
    )

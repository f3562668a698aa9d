from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
import re
from typing import Any
from zoneinfo import ZoneInfo

from crmrelay.core.errors import ConfigurationError
from crmrelay.services.rules.filters import resolve_timezone


_CLOCK = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

# Tenants opt in; an absent or disabled block never delays a send.
DEFAULT_QUIET_HOURS: dict[str, Any] = {
    "enabled": False,
    "start_time": "18:00",
    "end_time": "09:00",
    "weekends_enabled": True,
    "holidays": [],
}


@dataclass(frozen=True)
class QuietHoursConfig:
    start: time
    end: time
    weekends_enabled: bool = True
    holidays: frozenset[date] = field(default_factory=frozenset)
    timezone: str | None = None


@dataclass(frozen=True)
class QuietCheck:
    is_quiet: bool
    reason: str | None = None
    next_allowed: datetime | None = None


def _clock(value: Any, key: str) -> time:
    match = _CLOCK.match(str(value).strip()) if value is not None else None
    if match is None:
        raise ConfigurationError(f"quiet_hours.{key} must use HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


def parse_quiet_hours(raw: Any) -> QuietHoursConfig | None:
    """Read a tenant's ``quiet_hours`` settings block.

    Returns ``None`` when quiet hours are absent or disabled and raises
    ``ConfigurationError`` for a block that cannot be interpreted.
    """
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError("quiet_hours must be an object")
    merged = {**DEFAULT_QUIET_HOURS, **raw}
    if not merged["enabled"]:
        return None
    holidays = merged["holidays"] or []
    if not isinstance(holidays, list):
        raise ConfigurationError("quiet_hours.holidays must be a list of YYYY-MM-DD dates")
    try:
        holiday_dates = frozenset(date.fromisoformat(str(day)) for day in holidays)
    except ValueError as exc:
        raise ConfigurationError(f"quiet_hours.holidays has an invalid date: {exc}") from exc
    tz_name = merged.get("timezone")
    return QuietHoursConfig(
        start=_clock(merged["start_time"], "start_time"),
        end=_clock(merged["end_time"], "end_time"),
        weekends_enabled=bool(merged["weekends_enabled"]),
        holidays=holiday_dates,
        timezone=str(tz_name) if tz_name else None,
    )


def _utc_at(day: date, moment: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, moment, tzinfo=zone).astimezone(timezone.utc)


def check_quiet_time(config: QuietHoursConfig, *, now: datetime, tz: str | None = None) -> QuietCheck:
    # Evaluated in the block's own timezone, else the tenant's; windows may wrap midnight.
    zone = resolve_timezone(config.timezone or tz)
    local = now.astimezone(zone)
    today = local.date()

    if not config.weekends_enabled and local.weekday() >= 5:
        monday = today + timedelta(days=7 - local.weekday())
        return QuietCheck(True, "weekend", _utc_at(monday, config.end, zone))

    if today in config.holidays:
        return QuietCheck(True, "holiday", _utc_at(today + timedelta(days=1), config.end, zone))

    minutes = local.hour * 60 + local.minute
    start = config.start.hour * 60 + config.start.minute
    end = config.end.hour * 60 + config.end.minute
    if start > end:
        if minutes >= start:
            return QuietCheck(True, "quiet_hours", _utc_at(today + timedelta(days=1), config.end, zone))
        if minutes < end:
            return QuietCheck(True, "quiet_hours", _utc_at(today, config.end, zone))
    elif start <= minutes < end:
        return QuietCheck(True, "quiet_hours", _utc_at(today, config.end, zone))
    return QuietCheck(False)

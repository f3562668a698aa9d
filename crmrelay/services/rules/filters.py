from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from crmrelay.core.errors import FilterConfigError
from crmrelay.domain.events import CrmEvent


logger = logging.getLogger(__name__)


_RANGE_KEYS = ("value_min", "value_max", "probability_min", "probability_max")
_SET_KEYS = ("stage_ids", "pipeline_ids", "owner_ids", "currencies", "labels")
_LABEL_MATCH_TYPES = frozenset({"any", "all"})
DEFAULT_CURRENCY = "USD"

# Ready-made predicate sets offered to rule authors.
FILTER_PRESETS: Mapping[str, dict[str, Any]] = {
    "high_value": {"value_min": 50000},
    "medium_value": {"value_min": 10000, "value_max": 50000},
    "hot_deals": {"probability_min": 80},
    "business_hours": {
        "time_restrictions": {"business_hours_only": True, "start_hour": 9, "end_hour": 17, "weekdays_only": True}
    },
    "enterprise_pipeline": {"value_min": 100000, "probability_min": 50},
}


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("tenant_timezone_unknown timezone=%s", name)
        return ZoneInfo("UTC")


def parse_filters(raw: Any) -> dict[str, Any]:
    # Normalize stored filter config; anything that is not a well-typed object is a config error.
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise FilterConfigError(f"filters are not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise FilterConfigError(f"filters must be an object, got {type(raw).__name__}")
    for key in _RANGE_KEYS:
        value = raw.get(key)
        if value is not None and not _is_number(value):
            raise FilterConfigError(f"{key} must be numeric")
    for key in _SET_KEYS:
        value = raw.get(key)
        if value is not None and not isinstance(value, list):
            raise FilterConfigError(f"{key} must be a list")
    restrictions = raw.get("time_restrictions")
    if restrictions is not None and not isinstance(restrictions, dict):
        raise FilterConfigError("time_restrictions must be an object")
    for key in ("start_hour", "end_hour"):
        if restrictions and restrictions.get(key) is not None:
            _hour_of(restrictions[key], key)
    return raw


def _hour_of(value: Any, key: str) -> int:
    # Whole hours only; "9" is accepted, "nine", 9.5 and booleans are not.
    if isinstance(value, bool):
        raise FilterConfigError(f"time_restrictions.{key} must be a whole hour")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise FilterConfigError(f"time_restrictions.{key} must be a whole hour")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _as_float(value: Any) -> float:
    # Non-numeric CRM values count as zero.
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _normalized_set(values: Iterable[Any]) -> set[str]:
    return {str(value).strip().lower() for value in values if value is not None}


def _event_labels(raw: Any) -> set[str]:
    if raw is None or raw == "":
        return set()
    if isinstance(raw, (list, tuple, set)):
        return _normalized_set(raw)
    return _normalized_set(str(raw).split(","))


def _in_range(value: float, minimum: Any, maximum: Any) -> bool:
    if minimum is not None and value < float(minimum):
        return False
    if maximum is not None and value > float(maximum):
        return False
    return True


def _owner_of(event: CrmEvent) -> Any:
    owner = event.field("user_id")
    if owner is None:
        owner = event.field("owner_id")
    if isinstance(owner, dict):
        owner = owner.get("id") or owner.get("value")
    return owner


def _time_window_passes(restrictions: Mapping[str, Any], local_now: datetime) -> bool:
    if restrictions.get("weekdays_only") and local_now.weekday() >= 5:
        return False
    if restrictions.get("business_hours_only"):
        start_hour = _hour_of(restrictions.get("start_hour", 9), "start_hour")
        end_hour = _hour_of(restrictions.get("end_hour", 17), "end_hour")
        if not start_hour <= local_now.hour < end_hour:
            return False
    return True


def evaluate_filters(
    event: CrmEvent,
    filters: Mapping[str, Any],
    *,
    now: datetime | None = None,
    tz: str | None = None,
) -> bool:
    # Every configured predicate must pass; absent predicates pass.
    value = _as_float(event.field("value"))
    if not _in_range(value, filters.get("value_min"), filters.get("value_max")):
        return False

    probability = _as_float(event.field("probability"))
    if not _in_range(probability, filters.get("probability_min"), filters.get("probability_max")):
        return False

    for key, field_name in (("stage_ids", "stage_id"), ("pipeline_ids", "pipeline_id")):
        allowed = filters.get(key)
        if allowed:
            actual = event.field(field_name)
            if actual is None or str(actual).strip().lower() not in _normalized_set(allowed):
                return False

    owner_ids = filters.get("owner_ids")
    if owner_ids:
        owner = _owner_of(event)
        if owner is None or str(owner).strip().lower() not in _normalized_set(owner_ids):
            return False

    currencies = filters.get("currencies")
    if currencies:
        currency = str(event.field("currency") or DEFAULT_CURRENCY).strip().lower()
        if currency not in _normalized_set(currencies):
            return False

    labels = filters.get("labels")
    if labels:
        wanted = _normalized_set(labels)
        present = _event_labels(event.field("label") if event.field("label") is not None else event.field("labels"))
        match_type = str(filters.get("label_match_type") or "any").lower()
        if match_type == "all":
            if not wanted.issubset(present):
                return False
        elif not wanted & present:
            return False

    restrictions = filters.get("time_restrictions")
    if restrictions:
        moment = now or datetime.now(timezone.utc)
        if not _time_window_passes(restrictions, moment.astimezone(resolve_timezone(tz))):
            return False

    return True


def apply_filters(
    event: CrmEvent,
    raw_filters: Any,
    *,
    fail_open: bool,
    now: datetime | None = None,
    tz: str | None = None,
    rule_id: str | None = None,
) -> bool:
    try:
        filters = parse_filters(raw_filters)
    except FilterConfigError as exc:
        logger.warning(
            "rule_filters_unparsable rule_id=%s fail_open=%s error=%s",
            rule_id,
            fail_open,
            exc,
        )
        return fail_open
    return evaluate_filters(event, filters, now=now, tz=tz)


def validate_filters(raw: Any) -> list[str]:
    # Collect every problem so rule editors can show them at once.
    try:
        filters = parse_filters(raw)
    except FilterConfigError as exc:
        return [str(exc)]
    errors: list[str] = []
    for low, high in (("value_min", "value_max"), ("probability_min", "probability_max")):
        if filters.get(low) is not None and filters.get(high) is not None:
            if float(filters[low]) > float(filters[high]):
                errors.append(f"{low} must not exceed {high}")
    for key in ("probability_min", "probability_max"):
        if filters.get(key) is not None and not 0 <= float(filters[key]) <= 100:
            errors.append(f"{key} must be between 0 and 100")
    for key in ("value_min", "value_max"):
        if filters.get(key) is not None and float(filters[key]) < 0:
            errors.append(f"{key} must not be negative")
    match_type = filters.get("label_match_type")
    if match_type is not None and str(match_type).lower() not in _LABEL_MATCH_TYPES:
        errors.append("label_match_type must be 'any' or 'all'")
    restrictions = filters.get("time_restrictions") or {}
    for key in ("start_hour", "end_hour"):
        hour = restrictions.get(key)
        if hour is not None and (not isinstance(hour, int) or isinstance(hour, bool) or not 0 <= hour <= 24):
            errors.append(f"time_restrictions.{key} must be an hour between 0 and 24")
    start_hour = restrictions.get("start_hour", 9)
    end_hour = restrictions.get("end_hour", 17)
    if isinstance(start_hour, int) and isinstance(end_hour, int) and start_hour >= end_hour:
        errors.append("time_restrictions.start_hour must be before end_hour")
    return errors


def create_filter_preset(name: str, **overrides: Any) -> dict[str, Any]:
    if name not in FILTER_PRESETS:
        raise FilterConfigError(f"unknown filter preset {name!r}")
    preset = json.loads(json.dumps(FILTER_PRESETS[name]))
    preset.update(overrides)
    return preset

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Any, Mapping, Sequence

from crmrelay.core.config import Settings, get_settings
from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import ChannelEndpoint, Rule
from crmrelay.services.rules import taxonomy
from crmrelay.services.rules.filters import resolve_timezone


# Keyword order inside a category decides ties before endpoint order does.
ROUTING_KEYWORDS: Mapping[str, tuple[str, ...]] = {
    "vip": ("executive", "vip", "high-value", "leadership"),
    "manager": ("manager", "sales-manager", "medium-value"),
    "hot": ("urgent", "closing", "hot-deals"),
    "wins": ("wins", "celebrations", "closed-won", "success"),
    "lost": ("lost-deals", "analysis", "review"),
    "leads": ("leads", "new-business", "prospects", "new-deals"),
    "after_hours": ("alerts", "24-7", "urgent", "after-hours"),
}

_CATEGORY_BY_ACTION: Mapping[str, str] = {
    "won": "wins",
    "lost": "lost",
    "added": "leads",
}
_TOKEN_SPLIT = re.compile(r"[\s,;|/#]+")


@dataclass(frozen=True)
class RoutingDecision:
    # Keep the winning step alongside the endpoint so delivery logs explain the choice.
    endpoint: ChannelEndpoint
    reason: str


@dataclass(frozen=True)
class RoutingThresholds:
    vip_value: float
    manager_value: float
    hot_probability: float
    business_start_hour: int
    business_end_hour: int


def default_thresholds(settings: Settings | None = None) -> RoutingThresholds:
    settings = settings or get_settings()
    return RoutingThresholds(
        vip_value=settings.routing_vip_value_threshold,
        manager_value=settings.routing_manager_value_threshold,
        hot_probability=settings.routing_hot_probability_threshold,
        business_start_hour=settings.routing_business_start_hour,
        business_end_hour=settings.routing_business_end_hour,
    )


def _haystack(endpoint: ChannelEndpoint) -> str:
    tags = endpoint.tags_json or []
    parts = [endpoint.name or "", endpoint.description or "", *[str(tag) for tag in tags]]
    return " ".join(parts).lower()


def _tokens(endpoint: ChannelEndpoint) -> set[str]:
    return {token for token in _TOKEN_SPLIT.split(_haystack(endpoint)) if token}


def _first_by_keywords(endpoints: Sequence[ChannelEndpoint], keywords: Sequence[str]) -> ChannelEndpoint | None:
    for keyword in keywords:
        for endpoint in endpoints:
            if keyword in _haystack(endpoint):
                return endpoint
    return None


def _first_by_token(endpoints: Sequence[ChannelEndpoint], tokens: Sequence[str]) -> ChannelEndpoint | None:
    # Owner tags must match a whole token so user-1 never catches user-12.
    for token in tokens:
        for endpoint in endpoints:
            if token in _tokens(endpoint):
                return endpoint
    return None


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _event_category(event: CrmEvent) -> str | None:
    derived = taxonomy.derived_status_event(event.event, event.current, event.previous)
    action = taxonomy.event_action(derived or event.event)
    return _CATEGORY_BY_ACTION.get(action)


def _owner_id(event: CrmEvent) -> str | None:
    owner = event.field("owner_id")
    if owner is None:
        owner = event.field("user_id")
    if isinstance(owner, dict):
        owner = owner.get("id") or owner.get("value")
    if owner is None:
        owner = event.user_id
    return None if owner is None else str(owner)


def select_endpoint(
    event: CrmEvent,
    rule: Rule,
    endpoints: Sequence[ChannelEndpoint],
    *,
    now: datetime | None = None,
    tz: str | None = None,
    thresholds: RoutingThresholds | None = None,
) -> RoutingDecision | None:
    # Deterministic cascade; the first step that finds an active endpoint wins.
    thresholds = thresholds or default_thresholds()
    active = [endpoint for endpoint in endpoints if endpoint.is_active]
    by_id = {endpoint.id: endpoint for endpoint in active}

    if rule.pinned_endpoint_id and rule.pinned_endpoint_id in by_id:
        return RoutingDecision(by_id[rule.pinned_endpoint_id], "pinned")

    value = _as_float(event.field("value"))
    if value >= thresholds.vip_value:
        match = _first_by_keywords(active, ROUTING_KEYWORDS["vip"])
        if match is not None:
            return RoutingDecision(match, "value_vip")
    if value >= thresholds.manager_value:
        match = _first_by_keywords(active, ROUTING_KEYWORDS["manager"])
        if match is not None:
            return RoutingDecision(match, "value_manager")

    if _as_float(event.field("probability")) >= thresholds.hot_probability:
        match = _first_by_keywords(active, ROUTING_KEYWORDS["hot"])
        if match is not None:
            return RoutingDecision(match, "probability_hot")

    category = _event_category(event)
    if category is not None:
        match = _first_by_keywords(active, ROUTING_KEYWORDS[category])
        if match is not None:
            return RoutingDecision(match, f"category_{category}")

    local_now = (now or datetime.now(timezone.utc)).astimezone(resolve_timezone(tz))
    if not thresholds.business_start_hour <= local_now.hour < thresholds.business_end_hour:
        match = _first_by_keywords(active, ROUTING_KEYWORDS["after_hours"])
        if match is not None:
            return RoutingDecision(match, "after_hours")

    owner = _owner_id(event)
    if owner:
        match = _first_by_token(active, (f"user-{owner}".lower(), f"owner-{owner}".lower()))
        if match is not None:
            return RoutingDecision(match, "owner")

    if rule.default_endpoint_id and rule.default_endpoint_id in by_id:
        return RoutingDecision(by_id[rule.default_endpoint_id], "rule_default")
    if active:
        return RoutingDecision(active[0], "first_active")
    return None


def route(
    event: CrmEvent,
    rule: Rule,
    endpoints: Sequence[ChannelEndpoint],
    *,
    now: datetime | None = None,
    tz: str | None = None,
    thresholds: RoutingThresholds | None = None,
) -> ChannelEndpoint | None:
    decision = select_endpoint(event, rule, endpoints, now=now, tz=tz, thresholds=thresholds)
    return decision.endpoint if decision is not None else None


def routing_suggestions(endpoints: Sequence[ChannelEndpoint]) -> dict[str, Any]:
    # Show which categories each endpoint would catch and which categories nobody catches.
    covered: dict[str, list[str]] = {}
    for category, keywords in ROUTING_KEYWORDS.items():
        covered[category] = [
            endpoint.id
            for endpoint in endpoints
            if endpoint.is_active and any(keyword in _haystack(endpoint) for keyword in keywords)
        ]
    uncovered = sorted(category for category, ids in covered.items() if not ids)
    suggestions = [
        f"tag an endpoint with '{ROUTING_KEYWORDS[category][0]}' to route {category.replace('_', ' ')} events"
        for category in uncovered
    ]
    return {"categories": covered, "uncovered": uncovered, "suggestions": suggestions}

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.domain.models import Rule
from crmrelay.persistence.repos import rules as rules_repo
from crmrelay.services.rules import taxonomy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    # Which cascade step produced the rules, for delivery logs and debugging.
    step: str
    patterns: frozenset[str]
    rules: list[Rule]


def match_cascade(
    event_type: str,
    *,
    current: Mapping[str, Any] | None = None,
    previous: Mapping[str, Any] | None = None,
) -> list[tuple[str, frozenset[str]]]:
    # Ordered (step, patterns) pairs; the first step with any enabled rule wins.
    exact = frozenset({event_type.strip().lower(), taxonomy.normalize_event_name(event_type)})
    aliases = set(taxonomy.alias_group(event_type))
    derived = taxonomy.derived_status_event(event_type, current, previous)
    if derived is not None:
        aliases |= taxonomy.alias_group(derived)
    return [
        ("exact", exact),
        ("alias", frozenset(aliases) - exact),
        ("wildcard", taxonomy.wildcard_patterns(event_type)),
        ("entity", taxonomy.bare_entity_patterns(event_type)),
    ]


async def find_rules(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
    current: Mapping[str, Any] | None = None,
    previous: Mapping[str, Any] | None = None,
) -> RuleMatch:
    for step, patterns in match_cascade(event_type, current=current, previous=previous):
        if not patterns:
            continue
        rules = await rules_repo.list_enabled_rules(session, tenant_id=tenant_id, event_types=patterns)
        if rules:
            logger.debug(
                "rules_matched tenant_id=%s event_type=%s step=%s count=%s",
                tenant_id,
                event_type,
                step,
                len(rules),
            )
            return RuleMatch(step=step, patterns=patterns, rules=rules)
    return RuleMatch(step="none", patterns=frozenset(), rules=[])

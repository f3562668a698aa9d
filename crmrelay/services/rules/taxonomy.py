from __future__ import annotations

from typing import Any, Mapping

from crmrelay.core.errors import EventTaxonomyError


# Canonical event -> every name a CRM or a rule author may use for it (canonical included).
EVENT_ALIASES: Mapping[str, frozenset[str]] = {
    "deal.added": frozenset({"deal.added", "deal.create", "deal.created", "deal.new"}),
    "deal.updated": frozenset({"deal.updated", "deal.update", "deal.change", "deal.changed"}),
    "deal.deleted": frozenset({"deal.deleted", "deal.delete", "deal.removed"}),
    "deal.merged": frozenset({"deal.merged", "deal.merge"}),
    "deal.won": frozenset({"deal.won", "deal.closed_won", "deal.closed-won"}),
    "deal.lost": frozenset({"deal.lost", "deal.closed_lost", "deal.closed-lost"}),
    "person.added": frozenset(
        {"person.added", "person.create", "person.created", "contact.added", "contact.create", "contact.created"}
    ),
    "person.updated": frozenset(
        {"person.updated", "person.update", "person.change", "contact.updated", "contact.update", "contact.change"}
    ),
    "person.deleted": frozenset({"person.deleted", "person.delete", "contact.deleted", "contact.delete"}),
    "person.merged": frozenset({"person.merged", "contact.merged"}),
    "organization.added": frozenset(
        {
            "organization.added",
            "organization.create",
            "organization.created",
            "org.added",
            "org.create",
            "company.added",
            "company.create",
            "company.created",
        }
    ),
    "organization.updated": frozenset(
        {
            "organization.updated",
            "organization.update",
            "organization.change",
            "org.updated",
            "org.update",
            "company.updated",
            "company.update",
        }
    ),
    "organization.deleted": frozenset(
        {"organization.deleted", "organization.delete", "org.deleted", "company.deleted"}
    ),
    "organization.merged": frozenset({"organization.merged", "org.merged", "company.merged"}),
    "activity.added": frozenset({"activity.added", "activity.create", "activity.created"}),
    "activity.updated": frozenset({"activity.updated", "activity.update", "activity.change"}),
    "activity.deleted": frozenset({"activity.deleted", "activity.delete"}),
    "note.added": frozenset({"note.added", "note.create", "note.created"}),
    "note.updated": frozenset({"note.updated", "note.update"}),
    "note.deleted": frozenset({"note.deleted", "note.delete"}),
    "product.added": frozenset({"product.added", "product.create"}),
    "product.updated": frozenset({"product.updated", "product.update"}),
    "lead.added": frozenset({"lead.added", "lead.create", "lead.created"}),
    "lead.updated": frozenset({"lead.updated", "lead.update"}),
}

# Entity synonyms used for wildcard and bare-entity rules.
ENTITY_ALIASES: Mapping[str, str] = {
    "deal": "deal",
    "person": "person",
    "contact": "person",
    "organization": "organization",
    "org": "organization",
    "company": "organization",
    "activity": "activity",
    "note": "note",
    "product": "product",
    "lead": "lead",
}

# Pipedrive sends status changes as deal updates; these derived events share matching.
STATUS_CHANGE_EVENTS: Mapping[str, str] = {"won": "deal.won", "lost": "deal.lost"}

_ACTION_VERBS = frozenset(
    {"added", "updated", "deleted", "merged", "create", "created", "update", "change", "delete", "won", "lost"}
)


def validate_alias_table(
    aliases: Mapping[str, frozenset[str]] = EVENT_ALIASES,
    entities: Mapping[str, str] = ENTITY_ALIASES,
) -> dict[str, str]:
    # Build alias -> canonical; any ambiguity or malformed name is a startup error.
    index: dict[str, str] = {}
    for canonical, group in aliases.items():
        entity, _, action = canonical.partition(".")
        if not action or entities.get(entity) != entity:
            raise EventTaxonomyError(f"canonical event {canonical!r} is not entity.action with a known entity")
        if canonical not in group:
            raise EventTaxonomyError(f"canonical event {canonical!r} missing from its own alias group")
        for alias in group:
            alias_entity, _, alias_action = alias.partition(".")
            if alias != alias.lower() or not alias_action:
                raise EventTaxonomyError(f"alias {alias!r} must be lowercase entity.action")
            if entities.get(alias_entity) != entity:
                raise EventTaxonomyError(f"alias {alias!r} maps to a different entity than {canonical!r}")
            owner = index.get(alias)
            if owner is not None and owner != canonical:
                raise EventTaxonomyError(f"alias {alias!r} claimed by {owner!r} and {canonical!r}")
            index[alias] = canonical
    for target in STATUS_CHANGE_EVENTS.values():
        if target not in aliases:
            raise EventTaxonomyError(f"status change event {target!r} has no alias group")
    return index


ALIAS_INDEX: Mapping[str, str] = validate_alias_table()


def normalize_event_name(raw: str) -> str:
    # Lowercase and flip Pipedrive's `added.deal` form into `deal.added`.
    name = raw.strip().lower()
    first, sep, second = name.partition(".")
    if sep and first in _ACTION_VERBS and second in ENTITY_ALIASES:
        return f"{second}.{first}"
    return name


def canonical_event(raw: str) -> str:
    name = normalize_event_name(raw)
    return ALIAS_INDEX.get(name, name)


def entity_of(raw: str) -> str:
    name = normalize_event_name(raw)
    entity = name.partition(".")[0]
    return ENTITY_ALIASES.get(entity, entity)


def derived_status_event(event_name: str, current: Mapping[str, Any] | None, previous: Mapping[str, Any] | None) -> str | None:
    # A deal update that flips status to won/lost also counts as that status event.
    if canonical_event(event_name) != "deal.updated" or not current:
        return None
    status = str(current.get("status") or "").lower()
    previous_status = str((previous or {}).get("status") or "").lower()
    if status in STATUS_CHANGE_EVENTS and status != previous_status:
        return STATUS_CHANGE_EVENTS[status]
    return None


def alias_group(raw: str) -> frozenset[str]:
    canonical = canonical_event(raw)
    return EVENT_ALIASES.get(canonical, frozenset({canonical}))


def wildcard_patterns(raw: str) -> frozenset[str]:
    # Every spelling of `entity.*` for the event's entity.
    entity = entity_of(raw)
    return frozenset(f"{name}.*" for name, target in ENTITY_ALIASES.items() if target == entity)


def bare_entity_patterns(raw: str) -> frozenset[str]:
    entity = entity_of(raw)
    return frozenset(name for name, target in ENTITY_ALIASES.items() if target == entity)


def event_action(raw: str) -> str:
    return canonical_event(raw).partition(".")[2]

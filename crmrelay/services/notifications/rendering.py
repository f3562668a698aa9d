from __future__ import annotations

from typing import Any, Protocol

from crmrelay.domain.events import CrmEvent
from crmrelay.domain.models import Rule


class MessageRenderer(Protocol):
    def render(self, event: CrmEvent, rule: Rule) -> dict[str, Any]: ...


class PlainTextRenderer:
    # Minimal text payload; template and card rendering live outside the relay.
    def render(self, event: CrmEvent, rule: Rule) -> dict[str, Any]:
        title = event.field("title") or event.field("name") or event.object_id or "record"
        parts = [f"{event.event}: {title}"]
        value = event.field("value")
        if value is not None:
            parts.append(f"value {value} {event.field('currency') or 'USD'}")
        parts.append(f"rule {rule.name}")
        return {"text": " | ".join(str(part) for part in parts)}

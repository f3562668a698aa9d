from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crmrelay.core.errors import MalformedPayloadError


class CrmEvent(BaseModel):
    # Inbound CRM webhook; unknown keys are kept so the raw payload can be replayed verbatim.
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str
    company_id: str | None = None
    user_id: str | None = None
    object_data: dict[str, Any] | None = Field(default=None, alias="object")
    current: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None
    meta: dict[str, Any] | None = None
    company: dict[str, Any] | None = None
    timestamp: datetime | None = None

    @field_validator("company_id", "user_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        # CRMs send numeric ids; bindings are stored as strings.
        if value is None or value == "":
            return None
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    @field_validator("event", mode="before")
    @classmethod
    def _require_event(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("event must be a non-empty string")
        return value.strip()

    def field(self, name: str) -> Any:
        # Prefer the post-change snapshot; fall back to the object payload.
        if self.current and self.current.get(name) is not None:
            return self.current.get(name)
        if self.object_data:
            return self.object_data.get(name)
        return None

    @property
    def object_id(self) -> str | None:
        raw = None
        if self.object_data:
            raw = self.object_data.get("id")
        if raw is None and self.current:
            raw = self.current.get("id")
        if raw is None and self.meta:
            raw = self.meta.get("id")
        return None if raw is None else str(raw)

    @property
    def company_name(self) -> str | None:
        if self.company and self.company.get("name"):
            return str(self.company["name"])
        return None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_stored_event(payload: Any) -> CrmEvent:
    # Rebuild an event from a persisted queue row; anything unusable is malformed, not retryable.
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"payload is {type(payload).__name__}, expected object")
    try:
        return CrmEvent.model_validate(payload)
    except ValueError as exc:
        raise MalformedPayloadError(str(exc)) from exc

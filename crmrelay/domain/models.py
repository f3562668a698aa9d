from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from crmrelay.core.errors import ImmutableRecordError


# Store JSONB on Postgres while keeping sqlite-backed tests on plain JSON.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UtcDateTime(TypeDecorator):
    # Always hand back aware UTC datetimes, including on sqlite which drops tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Not unique: duplicate mappings must stay detectable rather than rejected.
    external_company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String)
    # IANA zone used for business-hours filters and after-hours routing.
    timezone: Mapped[str] = mapped_column(String, default="UTC", server_default="UTC")
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    # Mark bindings created by heuristics so operators can audit them.
    auto_mapped: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=_utc_now, onupdate=_utc_now, server_default=func.now()
    )


class ChannelEndpoint(Base):
    __tablename__ = "channel_endpoints"
    __table_args__ = (Index("ix_channel_endpoints_tenant_active", "tenant_id", "is_active"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Incoming-webhook URL of the chat space.
    address: Mapped[str] = mapped_column(Text)
    # Free-form tags matched by keyword routing.
    tags_json: Mapped[list[str] | None] = mapped_column(JsonDocument, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=_utc_now, onupdate=_utc_now, server_default=func.now()
    )


class Rule(Base):
    __tablename__ = "rules"
    __table_args__ = (
        Index("ix_rules_tenant_enabled_event", "tenant_id", "enabled", "event_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Exact event name, alias, `entity.*` wildcard or bare entity.
    event_type: Mapped[str] = mapped_column(String)
    # Lower values run first.
    priority: Mapped[int] = mapped_column(Integer, default=100, server_default="100")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    # Predicate set; may hold an unparsable raw string written by older clients.
    filters_json: Mapped[Any] = mapped_column(JsonDocument, nullable=True)
    pinned_endpoint_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("channel_endpoints.id", ondelete="SET NULL"), nullable=True
    )
    default_endpoint_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("channel_endpoints.id", ondelete="SET NULL"), nullable=True
    )
    # Opaque to delivery; consumed by the renderer.
    render_mode: Mapped[str] = mapped_column(String, default="compact", server_default="compact")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=_utc_now, onupdate=_utc_now, server_default=func.now()
    )


class DeliveryQueueItem(Base):
    __tablename__ = "delivery_queue"
    __table_args__ = (
        Index("ix_delivery_queue_status_tier_scheduled", "status", "tier", "scheduled_for"),
        Index("ix_delivery_queue_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    delivery_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Raw inbound event, replayed through the direct path.
    payload_json: Mapped[Any] = mapped_column(JsonDocument, nullable=True)
    # pending|processing|completed|failed|manual_recovery|error
    status: Mapped[str] = mapped_column(String)
    # queue|direct|batch|manual
    tier: Mapped[str] = mapped_column(String)
    priority: Mapped[int] = mapped_column(Integer, default=5, server_default="5")
    retry_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    scheduled_for: Mapped[datetime] = mapped_column(UtcDateTime)
    claimed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notifications_sent: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=_utc_now, onupdate=_utc_now, server_default=func.now()
    )


class DeliveryLogEntry(Base):
    __tablename__ = "delivery_log"
    __table_args__ = (
        Index("ix_delivery_log_created_at", "created_at"),
        Index("ix_delivery_log_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    delivery_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # queue|direct|batch|manual|all_tiers
    tier: Mapped[str] = mapped_column(String)
    # started|success|failed|queued_batch|manual_recovery
    status: Mapped[str] = mapped_column(String)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (Index("ix_notification_logs_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    rule_id: Mapped[str] = mapped_column(String, index=True)
    endpoint_id: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String)
    # sent|failed|suppressed|unrouted|deferred
    status: Mapped[str] = mapped_column(String)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, server_default=func.now())


@event.listens_for(DeliveryLogEntry, "before_update")
def _reject_delivery_log_update(mapper, connection, target) -> None:  # noqa: ANN001
    # Delivery log rows are an audit trail; only retention may remove them.
    raise ImmutableRecordError(f"delivery_log row {target.id} is append-only")

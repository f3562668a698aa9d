"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        # Not unique: duplicate company bindings are reported by the watchdog, not rejected.
        sa.Column("external_company_id", sa.String(), nullable=True),
        sa.Column("external_user_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("settings_json", postgresql.JSONB(), nullable=True),
        sa.Column("auto_mapped", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tenants_external_company_id", "tenants", ["external_company_id"])
    op.create_index("ix_tenants_external_user_id", "tenants", ["external_user_id"])

    op.create_table(
        "channel_endpoints",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("tags_json", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_channel_endpoints_tenant_id", "channel_endpoints", ["tenant_id"])
    op.create_index("ix_channel_endpoints_tenant_active", "channel_endpoints", ["tenant_id", "is_active"])

    op.create_table(
        "rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("filters_json", postgresql.JSONB(), nullable=True),
        sa.Column(
            "pinned_endpoint_id",
            sa.String(),
            sa.ForeignKey("channel_endpoints.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "default_endpoint_id",
            sa.String(),
            sa.ForeignKey("channel_endpoints.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("render_mode", sa.String(), nullable=False, server_default="compact"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rules_tenant_id", "rules", ["tenant_id"])
    op.create_index("ix_rules_tenant_enabled_event", "rules", ["tenant_id", "enabled", "event_type"])

    op.create_table(
        "delivery_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("delivery_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("notifications_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_queue_delivery_id", "delivery_queue", ["delivery_id"])
    op.create_index("ix_delivery_queue_tenant_id", "delivery_queue", ["tenant_id"])
    op.create_index(
        "ix_delivery_queue_status_tier_scheduled",
        "delivery_queue",
        ["status", "tier", "scheduled_for"],
    )
    op.create_index("ix_delivery_queue_status_created", "delivery_queue", ["status", "created_at"])

    op.create_table(
        "delivery_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("delivery_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result_json", postgresql.JSONB(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_log_delivery_id", "delivery_log", ["delivery_id"])
    op.create_index("ix_delivery_log_created_at", "delivery_log", ["created_at"])
    op.create_index("ix_delivery_log_tenant_created", "delivery_log", ["tenant_id", "created_at"])
    # Audit rows are append-only; retention deletes remain allowed.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION delivery_log_reject_update() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'delivery_log rows are append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER delivery_log_no_update
        BEFORE UPDATE ON delivery_log
        FOR EACH ROW EXECUTE FUNCTION delivery_log_reject_update();
        """
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("endpoint_id", sa.String(), nullable=True),
        sa.Column("delivery_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notification_logs_rule_id", "notification_logs", ["rule_id"])
    op.create_index("ix_notification_logs_delivery_id", "notification_logs", ["delivery_id"])
    op.create_index("ix_notification_logs_tenant_created", "notification_logs", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_table("notification_logs")
    op.execute("DROP TRIGGER IF EXISTS delivery_log_no_update ON delivery_log")
    op.execute("DROP FUNCTION IF EXISTS delivery_log_reject_update()")
    op.drop_table("delivery_log")
    op.drop_table("delivery_queue")
    op.drop_table("rules")
    op.drop_table("channel_endpoints")
    op.drop_table("tenants")

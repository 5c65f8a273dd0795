"""gateway schema

Revision ID: 0001_gateway_schema
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_gateway_schema"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "instances",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default=sa.text("'DISCONNECTED'"), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("qr_code", sa.Text(), nullable=True),
        sa.Column("qr_code_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("connection_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settings_json", _json(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_instances_tenant_id", "instances", ["tenant_id"], unique=False)
    op.create_index("ix_instances_tenant_status", "instances", ["tenant_id", "status"], unique=False)

    # One webhook subscription per instance, removed with the instance.
    op.create_table(
        "event_subscriptions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column(
            "instance_id",
            sa.String(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("events", _json(), nullable=False),
        sa.Column("secret", sa.String(), nullable=False),
        sa.Column("headers_json", _json(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("successful_deliveries", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_deliveries", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_event_subscriptions_instance_id", "event_subscriptions", ["instance_id"], unique=True
    )

    # Fixed-window usage counters for credential and tenant quota scopes.
    op.create_table(
        "usage_windows",
        sa.Column("scope_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), primary_key=True, nullable=False),
        sa.Column("count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_usage_windows_reset_at", "usage_windows", ["reset_at"], unique=False)

    op.create_table(
        "message_stats",
        sa.Column(
            "instance_id",
            sa.String(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("day", sa.Date(), primary_key=True, nullable=False),
        sa.Column("messages_sent", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("messages_received", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("messages_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("api_calls", sa.Integer(), server_default=sa.text("0"), nullable=False),
    )

    op.create_table(
        "tenant_plans",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tier", sa.String(), server_default=sa.text("'BASIC'"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "credential_limits",
        sa.Column("credential_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("hourly_limit", sa.Integer(), nullable=False),
    )
    op.create_index("ix_credential_limits_tenant_id", "credential_limits", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_credential_limits_tenant_id", table_name="credential_limits")
    op.drop_table("credential_limits")
    op.drop_table("tenant_plans")
    op.drop_table("message_stats")
    op.drop_index("ix_usage_windows_reset_at", table_name="usage_windows")
    op.drop_table("usage_windows")
    op.drop_index("ix_event_subscriptions_instance_id", table_name="event_subscriptions")
    op.drop_table("event_subscriptions")
    op.drop_index("ix_instances_tenant_status", table_name="instances")
    op.drop_index("ix_instances_tenant_id", table_name="instances")
    op.drop_table("instances")

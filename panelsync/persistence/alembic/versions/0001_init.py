"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
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


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "panels",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("base_url", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("family", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("health_status", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("last_health_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enabled_protocols", _json(), nullable=True),
        sa.Column("config_json", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_panels_family", "panels", ["family"])

    op.create_table(
        "plans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name_en", sa.String(), nullable=False),
        sa.Column("name_fa", sa.String(), nullable=True),
        sa.Column("price_per_gb", sa.Numeric(12, 2), nullable=True),
        sa.Column("default_data_limit_gb", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("default_duration_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("family", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_plans_code", "plans", ["code"])

    op.create_table(
        "plan_panel_bindings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("panel_id", sa.String(), sa.ForeignKey("panels.id"), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("inbound_ids", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("plan_id", "panel_id", name="uq_plan_panel_bindings_plan_panel"),
    )
    op.create_index("ix_plan_panel_bindings_plan_id", "plan_panel_bindings", ["plan_id"])
    op.create_index("ix_plan_panel_bindings_panel_id", "plan_panel_bindings", ["panel_id"])
    op.create_index(
        "ix_plan_panel_bindings_plan_primary", "plan_panel_bindings", ["plan_id", "is_primary"]
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("mobile", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("data_limit_gb", sa.Integer(), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("provisioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("access_url", sa.String(), nullable=True),
        sa.Column("expire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_bytes", sa.BigInteger(), nullable=True),
        sa.Column("panel_id", sa.String(), sa.ForeignKey("panels.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_username", "subscriptions", ["username"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])

    # Append-only; the bigserial id is the call-order key.
    op.create_table(
        "provisioning_attempts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("request_json", _json(), nullable=True),
        sa.Column("response_json", _json(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("panel_id", sa.String(), nullable=True),
        sa.Column("panel_name", sa.String(), nullable=True),
        sa.Column("panel_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_provisioning_attempts_subscription_id_id",
        "provisioning_attempts",
        ["subscription_id", "id"],
    )


def downgrade() -> None:
    op.drop_index("ix_provisioning_attempts_subscription_id_id", table_name="provisioning_attempts")
    op.drop_table("provisioning_attempts")
    op.drop_index("ix_subscriptions_plan_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_username", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_plan_panel_bindings_plan_primary", table_name="plan_panel_bindings")
    op.drop_index("ix_plan_panel_bindings_panel_id", table_name="plan_panel_bindings")
    op.drop_index("ix_plan_panel_bindings_plan_id", table_name="plan_panel_bindings")
    op.drop_table("plan_panel_bindings")
    op.drop_index("ix_plans_code", table_name="plans")
    op.drop_table("plans")
    op.drop_index("ix_panels_family", table_name="panels")
    op.drop_table("panels")

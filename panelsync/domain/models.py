from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")

FAMILY_MARZBAN = "marzban"
FAMILY_MARZNESHIN = "marzneshin"
PANEL_FAMILIES = (FAMILY_MARZBAN, FAMILY_MARZNESHIN)

HEALTH_ONLINE = "online"
HEALTH_OFFLINE = "offline"
HEALTH_UNKNOWN = "unknown"

SUBSCRIPTION_PENDING = "pending"
SUBSCRIPTION_PAID = "paid"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_EXPIRED = "expired"
SUBSCRIPTION_CANCELLED = "cancelled"
SUBSCRIPTION_DELETED = "deleted"


class Base(DeclarativeBase):
    pass


class Panel(Base):
    __tablename__ = "panels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    base_url: Mapped[str] = mapped_column(String)
    # Admin credentials used for the token handshake.
    username: Mapped[str] = mapped_column(String)
    password: Mapped[str] = mapped_column(String)
    family: Mapped[str] = mapped_column(String, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Advisory cache refreshed by health checks; never trusted as a guarantee.
    health_status: Mapped[str] = mapped_column(String, default=HEALTH_UNKNOWN, nullable=False)
    last_health_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enabled_protocols: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    # Last inbounds (Marzban) or services (Marzneshin) listing seen by a health check.
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, index=True)
    name_en: Mapped[str] = mapped_column(String)
    name_fa: Mapped[str | None] = mapped_column(String, nullable=True)
    price_per_gb: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    default_data_limit_gb: Mapped[int] = mapped_column(Integer, default=10)
    default_duration_days: Mapped[int] = mapped_column(Integer, default=30)
    # Every bound panel must speak this family.
    family: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PlanPanelBinding(Base):
    __tablename__ = "plan_panel_bindings"
    __table_args__ = (
        UniqueConstraint("plan_id", "panel_id", name="uq_plan_panel_bindings_plan_panel"),
        Index("ix_plan_panel_bindings_plan_primary", "plan_id", "is_primary"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("plans.id"), index=True)
    panel_id: Mapped[str] = mapped_column(String, ForeignKey("panels.id"), index=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Marzneshin service ids attached to accounts created through this binding.
    inbound_ids: Mapped[list[int] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Account name on the panel side.
    username: Mapped[str] = mapped_column(String, index=True)
    mobile: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    data_limit_gb: Mapped[int] = mapped_column(Integer)
    duration_days: Mapped[int] = mapped_column(Integer)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    # Deletion is a status value; rows are kept so panel cleanup can still reference them.
    status: Mapped[str] = mapped_column(String, default=SUBSCRIPTION_PENDING, index=True)
    plan_id: Mapped[str | None] = mapped_column(String, ForeignKey("plans.id"), nullable=True, index=True)
    provisioned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Cached reflection of the panel-side account; the panel stays authoritative.
    access_url: Mapped[str | None] = mapped_column(String, nullable=True)
    expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    quota_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    panel_id: Mapped[str | None] = mapped_column(String, ForeignKey("panels.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProvisioningAttempt(Base):
    __tablename__ = "provisioning_attempts"
    __table_args__ = (
        Index("ix_provisioning_attempts_subscription_id_id", "subscription_id", "id"),
    )

    # Monotonic id doubles as the call-order key; rows are never updated.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    operation: Mapped[str] = mapped_column(String)
    request_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    response_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    panel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    panel_name: Mapped[str | None] = mapped_column(String, nullable=True)
    panel_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

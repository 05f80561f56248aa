"""SQLAlchemy 2.0 ORM table definitions for the subscription engine state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_Money = Numeric(12, 2)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always loads as UTC.

    SQLite has no timezone support and returns naive datetimes; they are
    re-tagged as UTC so comparisons against the injected clock stay valid.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


_Timestamp = UTCDateTime()

_SLOT_CHECK = "slot IN ('breakfast', 'lunch', 'dinner')"


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all engine tables."""


# ---------------------------------------------------------------------------
# Plans and vendor slot configuration
# ---------------------------------------------------------------------------


class PlanTable(Base):
    """Billing period definition with allowed slots and per-slot skip limits."""

    __tablename__ = "plans"

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    allowed_slots: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    skip_limits: Mapped[dict[str, int]] = mapped_column(_JsonType, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (CheckConstraint("period_type IN ('weekly', 'monthly')", name="ck_plans_period_type"),)


class VendorSlotTable(Base):
    """Per-vendor, per-slot operating configuration (delivery window, capacity, price)."""

    __tablename__ = "vendor_slots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    delivery_window_start: Mapped[time] = mapped_column(Time, nullable=False)
    delivery_window_end: Mapped[time | None] = mapped_column(Time, nullable=True)
    # 0 means unlimited.
    max_meals_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_price: Mapped[Decimal] = mapped_column(_Money, nullable=False)

    __table_args__ = (
        UniqueConstraint("vendor_id", "slot", name="uq_vendor_slots_vendor_slot"),
        CheckConstraint(_SLOT_CHECK, name="ck_vendor_slots_slot"),
        CheckConstraint("max_meals_per_day >= 0", name="ck_vendor_slots_capacity"),
        CheckConstraint("base_price >= 0", name="ck_vendor_slots_price"),
    )


# ---------------------------------------------------------------------------
# Subscription groups, subscriptions, cycles
# ---------------------------------------------------------------------------


class SubscriptionGroupTable(Base):
    """One consumer + vendor + plan engagement.  Never deleted."""

    __tablename__ = "subscription_groups"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(64), ForeignKey("plans.plan_id"), nullable=False)
    delivery_address_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    paused_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    pause_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    resume_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _Timestamp, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_subscription_groups_status"),
        Index("ix_subscription_groups_consumer", "consumer_id"),
        Index("ix_subscription_groups_status_renewal", "status", "renewal_date"),
    )


class SubscriptionTable(Base):
    """Slot-level recurrence inside a group (one row per meal slot)."""

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscription_groups.group_id", ondelete="CASCADE"), nullable=False
    )
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    # Bit i set when weekday i (0 = Sunday) is a delivery day.
    weekday_mask: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _Timestamp, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("group_id", "slot", name="uq_subscriptions_group_slot"),
        CheckConstraint(_SLOT_CHECK, name="ck_subscriptions_slot"),
        CheckConstraint("weekday_mask > 0 AND weekday_mask < 128", name="ck_subscriptions_weekday_mask"),
        CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_subscriptions_status"),
        Index("ix_subscriptions_group", "group_id"),
    )


class CycleTable(Base):
    """One billing period instance of a group."""

    __tablename__ = "cycles"

    cycle_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscription_groups.group_id", ondelete="CASCADE"), nullable=False
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    cycle_start: Mapped[date] = mapped_column(Date, nullable=False)
    cycle_end: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    # First date orders may be generated for (group start or resume date).
    service_start: Mapped[date] = mapped_column(Date, nullable=False)
    is_first_cycle: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "cycle_start", name="uq_cycles_group_start"),
        CheckConstraint("cycle_end >= cycle_start", name="ck_cycles_bounds"),
        Index("ix_cycles_group_end", "group_id", "cycle_end"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Exactly one per cycle; trial invoices carry ``trial_id`` instead."""

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    cycle_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("cycles.cycle_id"), nullable=True, unique=True
    )
    trial_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("trials.trial_id"), nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    subtotal: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    credits_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    payment_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _Timestamp, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'paid', 'failed', 'void')", name="ck_invoices_status"),
        CheckConstraint("total_amount >= 0", name="ck_invoices_total_non_negative"),
        Index("ix_invoices_group", "group_id"),
        Index("ix_invoices_status", "status"),
    )


class InvoiceLineTable(Base):
    """Per-subscription breakdown of a cycle invoice."""

    __tablename__ = "invoice_lines"

    line_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("invoices.invoice_id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_meals: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billable_meals: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(_Money, nullable=False)

    __table_args__ = (
        UniqueConstraint("invoice_id", "subscription_id", name="uq_invoice_lines_invoice_subscription"),
        CheckConstraint("credits_applied <= scheduled_meals", name="ck_invoice_lines_credits"),
        Index("ix_invoice_lines_subscription", "subscription_id"),
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderTable(Base):
    """One delivery instance.  Unique per (subscription, service_date, slot)."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    delivery_address_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _Timestamp, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "service_date", "slot", name="uq_orders_subscription_date_slot"),
        CheckConstraint(
            "status IN ('scheduled', 'preparing', 'ready', 'picked', 'delivered', "
            "'skipped_by_customer', 'skipped_by_vendor', 'cancelled', 'failed_ops')",
            name="ck_orders_status",
        ),
        Index("ix_orders_vendor_date_slot", "vendor_id", "service_date", "slot"),
        Index("ix_orders_group_date", "group_id", "service_date"),
    )


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditTable(Base):
    """Subscription/slot-scoped entitlement.  Status only moves forward."""

    __tablename__ = "credits"

    credit_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    consumed_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")
    source_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(_Timestamp, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    used_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_credits_quantity_positive"),
        CheckConstraint(
            "consumed_quantity >= 0 AND consumed_quantity <= quantity",
            name="ck_credits_consumed_within_quantity",
        ),
        CheckConstraint(
            "reason IN ('skip', 'pause_mid_cycle', 'cancel_refund', 'vendor_skip', 'admin_adjustment')",
            name="ck_credits_reason",
        ),
        CheckConstraint("status IN ('available', 'used', 'expired', 'void')", name="ck_credits_status"),
        Index("ix_credits_subscription_slot_status", "subscription_id", "slot", "status"),
        Index("ix_credits_status_expires", "status", "expires_at"),
        Index("ix_credits_consumer", "consumer_id"),
    )


class CreditApplicationTable(Base):
    """Audit of credit quantity applied to an invoice."""

    __tablename__ = "credit_applications"

    application_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    credit_id: Mapped[str] = mapped_column(String(64), ForeignKey("credits.credit_id"), nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_credit_applications_quantity"),
        Index("ix_credit_applications_invoice", "invoice_id"),
    )


class GlobalCreditTable(Base):
    """Vendor-agnostic store credit (cancellation refunds, auto-cancelled pauses)."""

    __tablename__ = "global_credits"

    global_credit_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_group_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")
    refund_destination: Mapped[str | None] = mapped_column(String(256), nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_global_credits_amount"),
        CheckConstraint(
            "source_type IN ('cancel_refund', 'cancel_credit', 'pause_auto_cancel', 'admin_adjustment')",
            name="ck_global_credits_source_type",
        ),
        CheckConstraint(
            "status IN ('available', 'used', 'expired', 'pending_refund', 'refunded')",
            name="ck_global_credits_status",
        ),
        Index("ix_global_credits_consumer", "consumer_id"),
        Index("ix_global_credits_status", "status"),
    )


class SkipTable(Base):
    """Customer skip log; the per-(subscription, slot, cycle) skip counter."""

    __tablename__ = "skips"

    skip_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.order_id"), nullable=False, unique=True)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    cycle_start: Mapped[date] = mapped_column(Date, nullable=False)
    credited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_skips_subscription_slot_cycle", "subscription_id", "slot", "cycle_start"),)


# ---------------------------------------------------------------------------
# Vendor holidays
# ---------------------------------------------------------------------------


class VendorHolidayTable(Base):
    """Vendor-declared non-delivery date; ``slot`` NULL means the whole day."""

    __tablename__ = "vendor_holidays"

    holiday_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_vendor_holidays_vendor_date", "vendor_id", "holiday_date"),)


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------


class TrialTypeTable(Base):
    """Template for a short, bounded trial."""

    __tablename__ = "trial_types"

    trial_type_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    max_meals: Mapped[int] = mapped_column(Integer, nullable=False)
    allowed_slots: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    pricing_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    fixed_price: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    cooldown_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("duration_days > 0", name="ck_trial_types_duration"),
        CheckConstraint("max_meals > 0", name="ck_trial_types_max_meals"),
        CheckConstraint("pricing_mode IN ('per_meal', 'fixed')", name="ck_trial_types_pricing_mode"),
        CheckConstraint("discount_pct >= 0 AND discount_pct <= 100", name="ck_trial_types_discount"),
        CheckConstraint("cooldown_days >= 0", name="ck_trial_types_cooldown"),
    )


class VendorTrialTypeTable(Base):
    """A vendor's opt-in to offer a trial type."""

    __tablename__ = "vendor_trial_types"

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trial_type_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("trial_types.trial_type_id", ondelete="CASCADE"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("vendor_id", "trial_type_id"),)


class TrialTable(Base):
    """A consumer's trial with one vendor."""

    __tablename__ = "trials"

    trial_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trial_type_id: Mapped[str] = mapped_column(String(64), ForeignKey("trial_types.trial_type_id"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    total_price: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    delivery_address_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_Timestamp, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _Timestamp, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('scheduled', 'active', 'completed', 'cancelled')", name="ck_trials_status"),
        CheckConstraint("end_date >= start_date", name="ck_trials_dates"),
        Index("ix_trials_consumer_vendor_type", "consumer_id", "vendor_id", "trial_type_id"),
        Index("ix_trials_status_end", "status", "end_date"),
    )


class TrialMealTable(Base):
    """A single meal booked within a trial."""

    __tablename__ = "trial_meals"

    trial_meal_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    trial_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("trials.trial_id", ondelete="CASCADE"), nullable=False
    )
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(16), nullable=False)
    price: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")

    __table_args__ = (
        UniqueConstraint("trial_id", "service_date", "slot", name="uq_trial_meals_trial_date_slot"),
        CheckConstraint(_SLOT_CHECK, name="ck_trial_meals_slot"),
    )


# ---------------------------------------------------------------------------
# Maintenance runs
# ---------------------------------------------------------------------------


class MaintenanceRunTable(Base):
    """One execution record per maintenance task."""

    __tablename__ = "maintenance_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    task_name: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(_Timestamp, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(_Timestamp, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_maintenance_runs_status"),
        Index("ix_maintenance_runs_task_started", "task_name", "started_at"),
    )

"""Initial schema for the meal subscription engine.

Creates plans, vendor slot configuration, subscription groups and their
slot subscriptions, cycles, invoices, orders, the credit ledgers, skips,
vendor holidays, trials and maintenance run records.

Revision ID: 001
Revises: None
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")
_SLOT_CHECK = "slot IN ('breakfast', 'lunch', 'dinner')"


def _id(name: str) -> sa.Column:
    return sa.Column(name, sa.String(64), primary_key=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # plans / vendor_slots
    # ------------------------------------------------------------------
    op.create_table(
        "plans",
        _id("plan_id"),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("allowed_slots", _JSON, nullable=False),
        sa.Column("skip_limits", _JSON, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.CheckConstraint("period_type IN ('weekly', 'monthly')", name="ck_plans_period_type"),
    )

    op.create_table(
        "vendor_slots",
        _id("id"),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("delivery_window_start", sa.Time(), nullable=False),
        sa.Column("delivery_window_end", sa.Time(), nullable=True),
        sa.Column("max_meals_per_day", sa.Integer(), nullable=False, server_default="0"),
        _money("base_price"),
        sa.UniqueConstraint("vendor_id", "slot", name="uq_vendor_slots_vendor_slot"),
        sa.CheckConstraint(_SLOT_CHECK, name="ck_vendor_slots_slot"),
        sa.CheckConstraint("max_meals_per_day >= 0", name="ck_vendor_slots_capacity"),
        sa.CheckConstraint("base_price >= 0", name="ck_vendor_slots_price"),
    )

    # ------------------------------------------------------------------
    # subscription_groups / subscriptions / cycles
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_groups",
        _id("group_id"),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey("plans.plan_id"), nullable=False),
        sa.Column("delivery_address_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        _ts("paused_at", nullable=True),
        sa.Column("pause_date", sa.Date(), nullable=True),
        sa.Column("resume_at", sa.Date(), nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.Column("cancel_reason", sa.String(256), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_subscription_groups_status"),
    )
    op.create_index("ix_subscription_groups_consumer", "subscription_groups", ["consumer_id"])
    op.create_index("ix_subscription_groups_status_renewal", "subscription_groups", ["status", "renewal_date"])

    op.create_table(
        "subscriptions",
        _id("subscription_id"),
        sa.Column(
            "group_id",
            sa.String(64),
            sa.ForeignKey("subscription_groups.group_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("weekday_mask", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("group_id", "slot", name="uq_subscriptions_group_slot"),
        sa.CheckConstraint(_SLOT_CHECK, name="ck_subscriptions_slot"),
        sa.CheckConstraint("weekday_mask > 0 AND weekday_mask < 128", name="ck_subscriptions_weekday_mask"),
        sa.CheckConstraint("status IN ('active', 'paused', 'cancelled')", name="ck_subscriptions_status"),
    )
    op.create_index("ix_subscriptions_group", "subscriptions", ["group_id"])

    op.create_table(
        "cycles",
        _id("cycle_id"),
        sa.Column(
            "group_id",
            sa.String(64),
            sa.ForeignKey("subscription_groups.group_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("cycle_end", sa.Date(), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        sa.Column("service_start", sa.Date(), nullable=False),
        sa.Column("is_first_cycle", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        sa.UniqueConstraint("group_id", "cycle_start", name="uq_cycles_group_start"),
        sa.CheckConstraint("cycle_end >= cycle_start", name="ck_cycles_bounds"),
    )
    op.create_index("ix_cycles_group_end", "cycles", ["group_id", "cycle_end"])

    # ------------------------------------------------------------------
    # trials (invoices reference them)
    # ------------------------------------------------------------------
    op.create_table(
        "trial_types",
        _id("trial_type_id"),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("max_meals", sa.Integer(), nullable=False),
        sa.Column("allowed_slots", _JSON, nullable=False),
        sa.Column("pricing_mode", sa.String(16), nullable=False),
        sa.Column("discount_pct", sa.Numeric(5, 2), nullable=False, server_default="0"),
        _money("fixed_price", nullable=True),
        sa.Column("cooldown_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("duration_days > 0", name="ck_trial_types_duration"),
        sa.CheckConstraint("max_meals > 0", name="ck_trial_types_max_meals"),
        sa.CheckConstraint("pricing_mode IN ('per_meal', 'fixed')", name="ck_trial_types_pricing_mode"),
        sa.CheckConstraint("discount_pct >= 0 AND discount_pct <= 100", name="ck_trial_types_discount"),
        sa.CheckConstraint("cooldown_days >= 0", name="ck_trial_types_cooldown"),
    )

    op.create_table(
        "vendor_trial_types",
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column(
            "trial_type_id",
            sa.String(64),
            sa.ForeignKey("trial_types.trial_type_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("vendor_id", "trial_type_id"),
    )

    op.create_table(
        "trials",
        _id("trial_id"),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("trial_type_id", sa.String(64), sa.ForeignKey("trial_types.trial_type_id"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="scheduled"),
        _money("total_price"),
        sa.Column("delivery_address_id", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('scheduled', 'active', 'completed', 'cancelled')", name="ck_trials_status"),
        sa.CheckConstraint("end_date >= start_date", name="ck_trials_dates"),
    )
    op.create_index("ix_trials_consumer_vendor_type", "trials", ["consumer_id", "vendor_id", "trial_type_id"])
    op.create_index("ix_trials_status_end", "trials", ["status", "end_date"])

    op.create_table(
        "trial_meals",
        _id("trial_meal_id"),
        sa.Column("trial_id", sa.String(64), sa.ForeignKey("trials.trial_id", ondelete="CASCADE"), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        _money("price"),
        sa.Column("status", sa.String(16), nullable=False, server_default="scheduled"),
        sa.UniqueConstraint("trial_id", "service_date", "slot", name="uq_trial_meals_trial_date_slot"),
        sa.CheckConstraint(_SLOT_CHECK, name="ck_trial_meals_slot"),
    )

    # ------------------------------------------------------------------
    # invoices / invoice_lines
    # ------------------------------------------------------------------
    op.create_table(
        "invoices",
        _id("invoice_id"),
        sa.Column("cycle_id", sa.String(64), sa.ForeignKey("cycles.cycle_id"), nullable=True, unique=True),
        sa.Column("trial_id", sa.String(64), sa.ForeignKey("trials.trial_id"), nullable=True),
        sa.Column("group_id", sa.String(64), nullable=True),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _money("subtotal"),
        _money("credits_amount"),
        _money("total_amount"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="INR"),
        sa.Column("payment_reference", sa.String(256), nullable=True),
        _ts("paid_at", nullable=True),
        _ts("failed_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('pending', 'paid', 'failed')", name="ck_invoices_status"),
        sa.CheckConstraint("total_amount >= 0", name="ck_invoices_total_non_negative"),
    )
    op.create_index("ix_invoices_group", "invoices", ["group_id"])
    op.create_index("ix_invoices_status", "invoices", ["status"])

    op.create_table(
        "invoice_lines",
        _id("line_id"),
        sa.Column(
            "invoice_id",
            sa.String(64),
            sa.ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subscription_id", sa.String(64), sa.ForeignKey("subscriptions.subscription_id"), nullable=False
        ),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("scheduled_meals", sa.Integer(), nullable=False),
        sa.Column("credits_applied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billable_meals", sa.Integer(), nullable=False),
        _money("unit_price"),
        _money("line_total"),
        sa.UniqueConstraint("invoice_id", "subscription_id", name="uq_invoice_lines_invoice_subscription"),
        sa.CheckConstraint("credits_applied <= scheduled_meals", name="ck_invoice_lines_credits"),
    )
    op.create_index("ix_invoice_lines_subscription", "invoice_lines", ["subscription_id"])

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    op.create_table(
        "orders",
        _id("order_id"),
        sa.Column(
            "subscription_id", sa.String(64), sa.ForeignKey("subscriptions.subscription_id"), nullable=False
        ),
        sa.Column("group_id", sa.String(64), nullable=False),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="scheduled"),
        sa.Column("delivery_address_id", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("subscription_id", "service_date", "slot", name="uq_orders_subscription_date_slot"),
        sa.CheckConstraint(
            "status IN ('scheduled', 'preparing', 'ready', 'picked', 'delivered', "
            "'skipped_by_customer', 'skipped_by_vendor', 'cancelled', 'failed_ops')",
            name="ck_orders_status",
        ),
    )
    op.create_index("ix_orders_vendor_date_slot", "orders", ["vendor_id", "service_date", "slot"])
    op.create_index("ix_orders_group_date", "orders", ["group_id", "service_date"])

    # ------------------------------------------------------------------
    # credits / credit_applications / global_credits / skips
    # ------------------------------------------------------------------
    op.create_table(
        "credits",
        _id("credit_id"),
        sa.Column(
            "subscription_id", sa.String(64), sa.ForeignKey("subscriptions.subscription_id"), nullable=False
        ),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("consumed_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="available"),
        sa.Column("source_order_id", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("expires_at"),
        _ts("used_at", nullable=True),
        sa.Column("used_invoice_id", sa.String(64), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_credits_quantity_positive"),
        sa.CheckConstraint(
            "consumed_quantity >= 0 AND consumed_quantity <= quantity",
            name="ck_credits_consumed_within_quantity",
        ),
        sa.CheckConstraint(
            "reason IN ('skip', 'pause_mid_cycle', 'cancel_refund', 'vendor_skip', 'admin_adjustment')",
            name="ck_credits_reason",
        ),
        sa.CheckConstraint("status IN ('available', 'used', 'expired', 'void')", name="ck_credits_status"),
    )
    op.create_index("ix_credits_subscription_slot_status", "credits", ["subscription_id", "slot", "status"])
    op.create_index("ix_credits_status_expires", "credits", ["status", "expires_at"])
    op.create_index("ix_credits_consumer", "credits", ["consumer_id"])

    op.create_table(
        "credit_applications",
        _id("application_id"),
        sa.Column("credit_id", sa.String(64), sa.ForeignKey("credits.credit_id"), nullable=False),
        sa.Column("invoice_id", sa.String(64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        _ts("applied_at"),
        sa.CheckConstraint("quantity > 0", name="ck_credit_applications_quantity"),
    )
    op.create_index("ix_credit_applications_invoice", "credit_applications", ["invoice_id"])

    op.create_table(
        "global_credits",
        _id("global_credit_id"),
        sa.Column("consumer_id", sa.String(64), nullable=False),
        _money("amount"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="INR"),
        sa.Column("source_type", sa.String(32), nullable=False),
        sa.Column("source_group_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="available"),
        sa.Column("refund_destination", sa.String(256), nullable=True),
        sa.Column("refund_reference", sa.String(256), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        _ts("expires_at", nullable=True),
        _ts("created_at"),
        _ts("settled_at", nullable=True),
        sa.CheckConstraint("amount >= 0", name="ck_global_credits_amount"),
        sa.CheckConstraint(
            "source_type IN ('cancel_refund', 'cancel_credit', 'pause_auto_cancel', 'admin_adjustment')",
            name="ck_global_credits_source_type",
        ),
        sa.CheckConstraint(
            "status IN ('available', 'used', 'expired', 'pending_refund', 'refunded')",
            name="ck_global_credits_status",
        ),
    )
    op.create_index("ix_global_credits_consumer", "global_credits", ["consumer_id"])
    op.create_index("ix_global_credits_status", "global_credits", ["status"])

    op.create_table(
        "skips",
        _id("skip_id"),
        sa.Column(
            "subscription_id", sa.String(64), sa.ForeignKey("subscriptions.subscription_id"), nullable=False
        ),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.order_id"), nullable=False, unique=True),
        sa.Column("slot", sa.String(16), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("credited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("credit_id", sa.String(64), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_skips_subscription_slot_cycle", "skips", ["subscription_id", "slot", "cycle_start"])

    # ------------------------------------------------------------------
    # vendor_holidays / maintenance_runs
    # ------------------------------------------------------------------
    op.create_table(
        "vendor_holidays",
        _id("holiday_id"),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("holiday_date", sa.Date(), nullable=False),
        sa.Column("slot", sa.String(16), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_vendor_holidays_vendor_date", "vendor_holidays", ["vendor_id", "holiday_date"])

    op.create_table(
        "maintenance_runs",
        _id("run_id"),
        sa.Column("task_name", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        _ts("started_at"),
        _ts("finished_at", nullable=True),
        sa.Column("result_json", _JSON, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_maintenance_runs_status"),
    )
    op.create_index("ix_maintenance_runs_task_started", "maintenance_runs", ["task_name", "started_at"])


def downgrade() -> None:
    for table in (
        "maintenance_runs",
        "vendor_holidays",
        "skips",
        "global_credits",
        "credit_applications",
        "credits",
        "orders",
        "invoice_lines",
        "invoices",
        "trial_meals",
        "trials",
        "vendor_trial_types",
        "trial_types",
        "cycles",
        "subscriptions",
        "subscription_groups",
        "vendor_slots",
        "plans",
    ):
        op.drop_table(table)

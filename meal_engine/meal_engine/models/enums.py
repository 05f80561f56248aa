"""Status and classification enums shared by tables, services and the API."""

from __future__ import annotations

from enum import Enum


class PeriodType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MealSlot(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class GroupStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    VOID = "void"


class OrderStatus(str, Enum):
    SCHEDULED = "scheduled"
    PREPARING = "preparing"
    READY = "ready"
    PICKED = "picked"
    DELIVERED = "delivered"
    SKIPPED_BY_CUSTOMER = "skipped_by_customer"
    SKIPPED_BY_VENDOR = "skipped_by_vendor"
    CANCELLED = "cancelled"
    FAILED_OPS = "failed_ops"


# Orders in these states occupy vendor capacity.
CAPACITY_STATUSES: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.SCHEDULED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.PICKED,
        OrderStatus.DELIVERED,
    }
)


class CreditReason(str, Enum):
    SKIP = "skip"
    PAUSE_MID_CYCLE = "pause_mid_cycle"
    CANCEL_REFUND = "cancel_refund"
    VENDOR_SKIP = "vendor_skip"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class CreditStatus(str, Enum):
    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"
    VOID = "void"


class GlobalCreditSource(str, Enum):
    CANCEL_REFUND = "cancel_refund"
    CANCEL_CREDIT = "cancel_credit"
    PAUSE_AUTO_CANCEL = "pause_auto_cancel"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class GlobalCreditStatus(str, Enum):
    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"
    PENDING_REFUND = "pending_refund"
    REFUNDED = "refunded"


class RefundPreference(str, Enum):
    REFUND = "refund"
    CREDIT = "credit"


class TrialStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TrialMealStatus(str, Enum):
    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PricingMode(str, Enum):
    PER_MEAL = "per_meal"
    FIXED = "fixed"


class MaintenanceRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward-only transitions for subscription credits.
CREDIT_TRANSITIONS: dict[CreditStatus, frozenset[CreditStatus]] = {
    CreditStatus.AVAILABLE: frozenset({CreditStatus.USED, CreditStatus.EXPIRED, CreditStatus.VOID}),
    CreditStatus.USED: frozenset(),
    CreditStatus.EXPIRED: frozenset(),
    CreditStatus.VOID: frozenset(),
}

GLOBAL_CREDIT_TRANSITIONS: dict[GlobalCreditStatus, frozenset[GlobalCreditStatus]] = {
    GlobalCreditStatus.AVAILABLE: frozenset({GlobalCreditStatus.USED, GlobalCreditStatus.EXPIRED}),
    GlobalCreditStatus.PENDING_REFUND: frozenset({GlobalCreditStatus.REFUNDED}),
    GlobalCreditStatus.USED: frozenset(),
    GlobalCreditStatus.EXPIRED: frozenset(),
    GlobalCreditStatus.REFUNDED: frozenset(),
}

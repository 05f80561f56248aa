"""Domain models for the meal subscription engine."""

from meal_engine.models.enums import (
    CreditReason,
    CreditStatus,
    GlobalCreditSource,
    GlobalCreditStatus,
    GroupStatus,
    InvoiceStatus,
    MealSlot,
    OrderStatus,
    PeriodType,
    RefundPreference,
    TrialStatus,
)
from meal_engine.models.results import (
    AutoCancelResult,
    BackfillResult,
    CancelPreview,
    CancelResult,
    CapacityCheck,
    GenerationResult,
    HolidayResult,
    MaintenanceReport,
    PausePreview,
    PauseResult,
    ProvisionResult,
    RefundRequest,
    ResumePreview,
    ResumeResult,
    SkipAllowance,
    SkipResult,
    TrialBooking,
    TrialEligibility,
)

__all__ = [
    "AutoCancelResult",
    "BackfillResult",
    "CancelPreview",
    "CancelResult",
    "CapacityCheck",
    "CreditReason",
    "CreditStatus",
    "GenerationResult",
    "GlobalCreditSource",
    "GlobalCreditStatus",
    "GroupStatus",
    "HolidayResult",
    "InvoiceStatus",
    "MaintenanceReport",
    "MealSlot",
    "OrderStatus",
    "PausePreview",
    "PauseResult",
    "PeriodType",
    "ProvisionResult",
    "RefundPreference",
    "RefundRequest",
    "ResumePreview",
    "ResumeResult",
    "SkipAllowance",
    "SkipResult",
    "TrialBooking",
    "TrialEligibility",
    "TrialStatus",
]

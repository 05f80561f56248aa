"""Result and preview models returned by the engine services.

Every preview/commit operation returns one of these pydantic models so the
API layer can serialise them directly and the CLI can render them as tables.
Money values are :class:`~decimal.Decimal`; dates are calendar dates in the
platform timezone; instants are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from meal_engine.models.enums import GlobalCreditStatus, TrialStatus

# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------


class GenerationResult(BaseModel):
    """Outcome of materialising orders for one cycle."""

    cycle_id: str
    created: int = Field(default=0, description="Orders inserted by this run.")
    existing: int = Field(default=0, description="Orders that already existed for the key.")
    holiday_suppressed: int = Field(default=0, description="Dates skipped because of a vendor holiday.")
    errors: int = Field(default=0, description="Individual inserts that failed and were logged.")


class BackfillResult(BaseModel):
    """Aggregate of a generation sweep over all paid, open cycles."""

    cycles: int = 0
    created: int = 0
    existing: int = 0
    holiday_suppressed: int = 0
    errors: int = 0
    failed_cycles: list[str] = Field(default_factory=list)

    def add(self, result: GenerationResult) -> None:
        self.cycles += 1
        self.created += result.created
        self.existing += result.existing
        self.holiday_suppressed += result.holiday_suppressed
        self.errors += result.errors


class CapacityCheck(BaseModel):
    """Vendor capacity for a (slot, date).  ``max == 0`` means unlimited."""

    service_date: date
    slot: str
    available: bool
    current: int
    max: int
    remaining: int


class HolidayResult(BaseModel):
    holiday_id: str
    vendor_id: str
    holiday_date: date
    slot: str | None = None
    orders_affected: int = 0
    credits_created: int = 0


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------


class SkipResult(BaseModel):
    """Outcome of a customer skip."""

    order_id: str
    subscription_id: str
    service_date: date
    slot: str
    credited: bool
    credit_id: str | None = None
    cutoff_at: datetime
    skip_limit: int
    skips_used: int = Field(..., description="Skips recorded in the cycle, including this one.")
    remaining_credited_skips: int


class SkipAllowance(BaseModel):
    subscription_id: str
    slot: str
    cycle_start: date
    cycle_end: date
    skip_limit: int
    skips_used: int
    remaining_credited_skips: int


# ---------------------------------------------------------------------------
# Pause / resume / cancel
# ---------------------------------------------------------------------------


class PausePreview(BaseModel):
    """What committing a pause on ``pause_date`` would do."""

    group_id: str
    pause_date: date
    orders_count: int
    credits_count: int
    unit_prices: dict[str, Decimal] = Field(default_factory=dict, description="Unit price per slot.")
    total_amount: Decimal
    credit_expires_at: datetime
    auto_cancel_on: date = Field(..., description="Date the group is auto-cancelled if not resumed.")


class PauseResult(BaseModel):
    group_id: str
    status: str
    pause_date: date
    paused_at: datetime
    orders_cancelled: int
    credits_created: int
    credit_ids: list[str] = Field(default_factory=list)


class ResumeScenario(BaseModel):
    """Where the resume date falls relative to the current cycle."""

    name: str
    cycle_start: date
    cycle_end: date
    service_start: date


class ResumePreview(BaseModel):
    group_id: str
    resume_date: date
    scenario: ResumeScenario
    orders_to_reinstate: int
    credits_to_void: int


class ResumeResult(BaseModel):
    group_id: str
    status: str
    resume_date: date
    scenario: str
    orders_reinstated: int
    credits_voided: int
    renewal_date: date


class CancelPreview(BaseModel):
    group_id: str
    cancel_date: date
    orders_count: int
    remaining_meals_value: Decimal
    available_credits_count: int
    available_credit_value: Decimal
    unpaid_invoices_count: int = 0
    applied_credit_value: Decimal = Decimal("0.00")
    total_refund: Decimal


class RefundRequest(BaseModel):
    """Hand-off to the payment gateway worker for a cash refund."""

    global_credit_id: str
    consumer_id: str
    amount: Decimal
    currency: str
    destination: str | None = None


class CancelResult(BaseModel):
    group_id: str
    status: str
    cancel_date: date
    orders_cancelled: int
    credits_voided: int
    invoices_voided: int = 0
    global_credit_id: str | None = None
    refund_amount: Decimal
    global_credit_status: GlobalCreditStatus | None = None
    refund_request: RefundRequest | None = None


class AutoCancelResult(BaseModel):
    """Outcome of the stale-pause sweep."""

    examined: int = 0
    cancelled: int = 0
    failed: int = 0
    cancelled_group_ids: list[str] = Field(default_factory=list)
    failed_group_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class InvoiceLineSummary(BaseModel):
    subscription_id: str
    slot: str
    scheduled_meals: int
    credits_applied: int
    billable_meals: int
    unit_price: Decimal
    line_total: Decimal


class ProvisionResult(BaseModel):
    """A cycle and its invoice, freshly provisioned or already present."""

    group_id: str
    cycle_id: str
    cycle_start: date
    cycle_end: date
    service_start: date
    invoice_id: str
    invoice_status: str
    total_amount: Decimal
    credits_applied: int = 0
    created: bool = True
    lines: list[InvoiceLineSummary] = Field(default_factory=list)


class RenewalReport(BaseModel):
    examined: int = 0
    provisioned: int = 0
    already_provisioned: int = 0
    failed: int = 0
    failed_group_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------


class TrialMealRequest(BaseModel):
    service_date: date
    slot: str


class TrialEligibility(BaseModel):
    eligible: bool
    reason: str | None = None
    cooldown_ends_at: date | None = None


class TrialBooking(BaseModel):
    trial_id: str
    status: TrialStatus
    start_date: date
    end_date: date
    meals: list[TrialMealRequest]
    total_price: Decimal
    invoice_id: str


class TrialSweepResult(BaseModel):
    activated: int = 0
    completed: int = 0


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TaskOutcome(BaseModel):
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None


class MaintenanceSummary(BaseModel):
    total_tasks: int
    successful: int
    failed: int
    has_errors: bool


class MaintenanceReport(BaseModel):
    """Per-task outcomes of one daily maintenance run."""

    success: bool
    timestamp: datetime
    results: dict[str, TaskOutcome]
    summary: MaintenanceSummary

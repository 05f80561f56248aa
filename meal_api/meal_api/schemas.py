"""Shared Pydantic request and response models for API endpoints.

Engine previews and results (:mod:`meal_engine.models.results`) are returned
as-is; the models here cover stored rows and request bodies.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from meal_engine.models.enums import RefundPreference
from meal_engine.models.results import TrialMealRequest

# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class CreateGroupRequest(BaseModel):
    """Request body for ``POST /subscriptions/groups``."""

    consumer_id: str
    vendor_id: str
    plan_id: str
    start_date: date
    slots: dict[str, list[int]] = Field(
        ...,
        description="Meal slot -> delivery weekdays (0 = Sunday ... 6 = Saturday).",
    )
    delivery_address_id: str | None = None


class SubscriptionResponse(BaseModel):
    subscription_id: str
    slot: str
    weekdays: list[int]
    status: str


class CycleResponse(BaseModel):
    cycle_id: str
    cycle_start: date
    cycle_end: date
    service_start: date
    renewal_date: date
    is_first_cycle: bool

    model_config = {"from_attributes": True}


class GroupResponse(BaseModel):
    """A subscription group with its subscriptions and current cycle."""

    group_id: str
    consumer_id: str
    vendor_id: str
    plan_id: str
    status: str
    start_date: date
    renewal_date: date
    pause_date: date | None = None
    resume_at: date | None = None
    cancelled_at: datetime | None = None
    subscriptions: list[SubscriptionResponse] = Field(default_factory=list)
    current_cycle: CycleResponse | None = None


class SkipRequest(BaseModel):
    service_date: date
    slot: str | None = Field(default=None, description="Must match the subscription's slot when given.")


class PauseRequest(BaseModel):
    pause_date: date


class ResumeRequest(BaseModel):
    resume_date: date


class CancelRequest(BaseModel):
    cancel_date: date
    refund_preference: RefundPreference
    reason: str | None = Field(default=None, max_length=256)
    refund_destination: str | None = Field(default=None, max_length=256)


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditResponse(BaseModel):
    credit_id: str
    subscription_id: str
    slot: str
    reason: str
    quantity: int
    consumed_quantity: int
    status: str
    note: str | None = None
    created_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class GlobalCreditResponse(BaseModel):
    global_credit_id: str
    consumer_id: str
    amount: Decimal
    currency: str
    source_type: str
    status: str
    refund_destination: str | None = None
    refund_reference: str | None = None
    expires_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class CreditGrantRequest(BaseModel):
    subscription_id: str
    quantity: int = Field(..., ge=1)
    note: str | None = None
    expires_at: datetime | None = None


class CreditVoidRequest(BaseModel):
    note: str | None = None


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------


class HolidayRequest(BaseModel):
    holiday_date: date
    slot: str | None = Field(default=None, description="Omit to close every slot.")
    reason: str | None = Field(default=None, max_length=512)


class HolidayResponse(BaseModel):
    holiday_id: str
    vendor_id: str
    holiday_date: date
    slot: str | None = None
    reason: str | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------


class TrialRequest(BaseModel):
    vendor_id: str
    trial_type_id: str
    start_date: date
    meals: list[TrialMealRequest]
    delivery_address_id: str | None = None


class TrialResponse(BaseModel):
    trial_id: str
    consumer_id: str
    vendor_id: str
    trial_type_id: str
    start_date: date
    end_date: date
    status: str
    total_price: Decimal

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentEvent(BaseModel):
    """A payment gateway notification."""

    type: str
    invoice_id: str | None = None
    global_credit_id: str | None = None
    reference: str | None = None

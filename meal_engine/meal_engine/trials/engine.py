"""Trial booking with per-(consumer, vendor, trial type) cooldowns.

A trial type is a template (duration, meal cap, allowed slots, pricing);
vendors opt in to offer it.  A consumer may book a trial of a type with a
vendor only when no earlier trial of that type with that vendor is still
inside its cooldown: ``cooldown_ends_at = end_date + cooldown_days`` and the
consumer becomes eligible again on that date.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock
from meal_engine.config import EngineSettings
from meal_engine.errors import ConflictState, CooldownActive, InvalidWindow, LimitExceeded, NotFound
from meal_engine.fulfillment.capacity import CapacityChecker
from meal_engine.identity import SYSTEM_ACTOR, Actor, Capability, authorize, ensure_owner
from meal_engine.models.enums import InvoiceStatus, PricingMode, TrialMealStatus, TrialStatus
from meal_engine.models.results import TrialBooking, TrialEligibility, TrialMealRequest, TrialSweepResult
from meal_engine.pricing import ZERO, discounted_price, to_money
from meal_engine.state.database import unit_of_work
from meal_engine.state.repository import (
    InvoiceRepository,
    TrialRepository,
    TrialTypeRepository,
    VendorSlotRepository,
)
from meal_engine.state.tables import TrialTable, TrialTypeTable

logger = logging.getLogger(__name__)


class TrialEngine:
    """Eligibility, booking and lifecycle of trials."""

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._types = TrialTypeRepository(session)
        self._trials = TrialRepository(session)
        self._invoices = InvoiceRepository(session)
        self._slots = VendorSlotRepository(session)
        self._capacity = CapacityChecker(session)

    async def _offered_type(self, vendor_id: str, trial_type_id: str) -> TrialTypeTable:
        trial_type = await self._types.get(trial_type_id)
        if trial_type is None or not trial_type.active:
            raise NotFound("trial_type", trial_type_id)
        if not await self._types.is_offered(vendor_id, trial_type_id):
            raise NotFound("vendor_trial_type", f"{vendor_id}/{trial_type_id}")
        return trial_type

    async def check_eligibility(self, consumer_id: str, vendor_id: str, trial_type_id: str) -> TrialEligibility:
        """Whether *consumer_id* may book *trial_type_id* with *vendor_id* today.

        Raises
        ------
        NotFound
            The trial type does not exist, is inactive, or the vendor does not offer it.
        """
        trial_type = await self._offered_type(vendor_id, trial_type_id)
        previous = await self._trials.latest_blocking(consumer_id, vendor_id, trial_type_id)
        if previous is None:
            return TrialEligibility(eligible=True)

        cooldown_ends_at = previous.end_date + timedelta(days=trial_type.cooldown_days)
        today = self._clock.today(self._settings.tz)
        if cooldown_ends_at > today:
            return TrialEligibility(eligible=False, reason="cooldown", cooldown_ends_at=cooldown_ends_at)
        return TrialEligibility(eligible=True, cooldown_ends_at=cooldown_ends_at)

    async def create_trial(
        self,
        actor: Actor,
        *,
        vendor_id: str,
        trial_type_id: str,
        start_date: date,
        meals: Sequence[TrialMealRequest],
        delivery_address_id: str | None = None,
    ) -> TrialBooking:
        """Book a trial for the calling consumer.

        Parameters
        ----------
        actor:
            Caller; must hold ``book:trials``.  ``actor.subject`` is the consumer.
        vendor_id:
            Vendor offering the trial.
        trial_type_id:
            Trial template.
        start_date:
            First day of the trial window (today or later).
        meals:
            Requested (date, slot) pairs within the window.
        delivery_address_id:
            Opaque address reference.

        Raises
        ------
        CooldownActive
            A previous trial of this type with this vendor is in cooldown.
        LimitExceeded
            No meals, more than ``max_meals``, or a requested day is at capacity.
        InvalidWindow
            A meal outside the window or allowed slots, a duplicate meal, or a
            start date in the past.
        """
        authorize(actor, Capability.BOOK_TRIALS)
        consumer_id = actor.subject
        trial_type = await self._offered_type(vendor_id, trial_type_id)

        eligibility = await self.check_eligibility(consumer_id, vendor_id, trial_type_id)
        if not eligibility.eligible and eligibility.cooldown_ends_at is not None:
            raise CooldownActive(eligibility.cooldown_ends_at)

        self._validate_meals(trial_type, start_date, meals)
        end_date = start_date + timedelta(days=trial_type.duration_days - 1)

        base_prices: dict[str, Decimal] = {}
        for slot in sorted({m.slot for m in meals}):
            config = await self._slots.get(vendor_id, slot)
            if config is None:
                raise NotFound("vendor_slot", f"{vendor_id}/{slot}")
            base_prices[slot] = config.base_price

        for (service_date, slot), quantity in Counter((m.service_date, m.slot) for m in meals).items():
            await self._capacity.reserve(vendor_id, slot, service_date, quantity)

        meal_prices = [discounted_price(base_prices[m.slot], trial_type.discount_pct) for m in meals]
        if trial_type.pricing_mode == PricingMode.FIXED.value:
            total = to_money(trial_type.fixed_price or ZERO)
        else:
            total = to_money(sum(meal_prices, ZERO))

        async with unit_of_work(self._session):
            trial = await self._trials.create(
                consumer_id=consumer_id,
                vendor_id=vendor_id,
                trial_type_id=trial_type_id,
                start_date=start_date,
                end_date=end_date,
                total_price=total,
                delivery_address_id=delivery_address_id,
            )
            for meal, price in zip(meals, meal_prices, strict=True):
                await self._trials.add_meal(
                    trial_id=trial.trial_id,
                    service_date=meal.service_date,
                    slot=meal.slot,
                    price=price,
                )
            invoice = await self._invoices.create(
                trial_id=trial.trial_id,
                consumer_id=consumer_id,
                vendor_id=vendor_id,
                subtotal=total,
                total_amount=total,
                currency=self._settings.currency,
            )
            if total <= ZERO:
                invoice.status = InvoiceStatus.PAID.value
                invoice.paid_at = self._clock.now()

        logger.info(
            "Trial %s booked: consumer=%s vendor=%s type=%s meals=%d total=%s",
            trial.trial_id,
            consumer_id,
            vendor_id,
            trial_type_id,
            len(meals),
            total,
        )
        return TrialBooking(
            trial_id=trial.trial_id,
            status=TrialStatus(trial.status),
            start_date=start_date,
            end_date=end_date,
            meals=list(meals),
            total_price=total,
            invoice_id=invoice.invoice_id,
        )

    def _validate_meals(self, trial_type: TrialTypeTable, start_date: date, meals: Sequence[TrialMealRequest]) -> None:
        today = self._clock.today(self._settings.tz)
        if start_date < today:
            raise InvalidWindow(
                f"Trial start {start_date.isoformat()} is in the past",
                context={"earliest_date": today, "requested": start_date},
            )
        if not meals or len(meals) > trial_type.max_meals:
            raise LimitExceeded(
                f"A {trial_type.name} trial includes 1 to {trial_type.max_meals} meals",
                context={"limit": trial_type.max_meals, "requested": len(meals)},
            )

        end_date = start_date + timedelta(days=trial_type.duration_days - 1)
        seen: set[tuple[date, str]] = set()
        for meal in meals:
            if not start_date <= meal.service_date <= end_date:
                raise InvalidWindow(
                    f"Meal on {meal.service_date.isoformat()} is outside the trial window",
                    context={"start_date": start_date, "end_date": end_date, "requested": meal.service_date},
                )
            if meal.slot not in trial_type.allowed_slots:
                raise InvalidWindow(
                    f"{meal.slot} is not available on this trial",
                    context={"slot": meal.slot, "allowed_slots": trial_type.allowed_slots},
                )
            key = (meal.service_date, meal.slot)
            if key in seen:
                raise InvalidWindow(
                    f"Duplicate {meal.slot} meal on {meal.service_date.isoformat()}",
                    context={"service_date": meal.service_date, "slot": meal.slot},
                )
            seen.add(key)

    async def cancel_trial(self, actor: Actor, trial_id: str) -> TrialTable:
        """Cancel a trial that has not started yet."""
        authorize(actor, Capability.BOOK_TRIALS)
        async with unit_of_work(self._session):
            trial = await self._trials.get(trial_id)
            if trial is None:
                raise NotFound("trial", trial_id)
            ensure_owner(actor, trial.consumer_id, "trial")
            if trial.status != TrialStatus.SCHEDULED.value:
                raise ConflictState(
                    f"Only scheduled trials can be cancelled; trial {trial_id} is {trial.status}",
                    context={"status": trial.status},
                )
            trial.status = TrialStatus.CANCELLED.value
            for meal in await self._trials.list_meals(trial_id):
                meal.status = TrialMealStatus.CANCELLED.value
        logger.info("Trial %s cancelled by %s", trial_id, actor.subject)
        return trial

    async def complete_trials(self, actor: Actor = SYSTEM_ACTOR) -> TrialSweepResult:
        """Activate trials whose window has started and complete those that have ended."""
        authorize(actor, Capability.RUN_MAINTENANCE)
        today = self._clock.today(self._settings.tz)
        result = TrialSweepResult()
        async with unit_of_work(self._session):
            for trial in await self._trials.list_started(today):
                trial.status = TrialStatus.ACTIVE.value
                result.activated += 1
            for trial in await self._trials.list_ended(today):
                trial.status = TrialStatus.COMPLETED.value
                result.completed += 1
        logger.info("Trial sweep: activated=%d completed=%d", result.activated, result.completed)
        return result

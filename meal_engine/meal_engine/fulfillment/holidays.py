"""Vendor holidays.

Declaring a holiday happens in two units of work:

1. the holiday row is recorded (an identical existing declaration is
   reused);
2. every ``scheduled`` order of the vendor on that date (optionally limited to
   one slot) becomes ``skipped_by_vendor`` and earns exactly one
   ``vendor_skip`` credit.

The second step is atomic on its own.  If it fails, the holiday stays
recorded and :meth:`VendorHolidayApplicator.reapply` finishes the job; since
only still-scheduled orders are touched, re-applying never double-credits.
Vendor credits do not create skip records, so they never count toward a
consumer's per-cycle skip limit.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock
from meal_engine.config import EngineSettings
from meal_engine.errors import InvalidWindow, NotFound
from meal_engine.identity import Actor, Capability, authorize, ensure_owner
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import CreditReason, MealSlot, OrderStatus
from meal_engine.models.results import HolidayResult
from meal_engine.state.database import unit_of_work
from meal_engine.state.repository import OrderRepository, SubscriptionRepository, VendorHolidayRepository
from meal_engine.state.tables import SubscriptionTable, VendorHolidayTable

logger = logging.getLogger(__name__)


class VendorHolidayApplicator:
    """Record vendor holidays and convert affected orders into credits."""

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._holidays = VendorHolidayRepository(session)
        self._orders = OrderRepository(session)
        self._subs = SubscriptionRepository(session)
        self._ledger = CreditLedger(session, clock, settings)

    async def apply_holiday(
        self,
        actor: Actor,
        vendor_id: str,
        holiday_date: date,
        slot: str | None = None,
        reason: str | None = None,
    ) -> HolidayResult:
        """Declare a holiday and skip the affected orders.

        Parameters
        ----------
        actor:
            Caller; must hold ``manage:holidays`` and be the vendor (or an admin).
        vendor_id:
            Vendor declaring the holiday.
        holiday_date:
            The non-delivery date; must not be in the past.
        slot:
            Limit the holiday to one slot; ``None`` closes the whole day.
        reason:
            Free-text reason shown to consumers.
        """
        authorize(actor, Capability.MANAGE_HOLIDAYS)
        ensure_owner(actor, vendor_id, "vendor")
        if slot is not None and slot not in {s.value for s in MealSlot}:
            raise InvalidWindow(
                f"Unknown slot '{slot}'",
                context={"slot": slot, "allowed_slots": [s.value for s in MealSlot]},
            )
        today = self._clock.today(self._settings.tz)
        if holiday_date < today:
            raise InvalidWindow(
                f"Holiday date {holiday_date.isoformat()} is in the past",
                context={"earliest_date": today, "requested": holiday_date},
            )

        async with unit_of_work(self._session):
            holiday = await self._holidays.find(vendor_id, holiday_date, slot)
            if holiday is None:
                holiday = await self._holidays.create(
                    vendor_id=vendor_id,
                    holiday_date=holiday_date,
                    slot=slot,
                    reason=reason,
                    created_at=self._clock.now(),
                )
                logger.info(
                    "Vendor %s declared a holiday on %s (%s)",
                    vendor_id,
                    holiday_date.isoformat(),
                    slot or "all slots",
                )

        return await self._apply(holiday)

    async def reapply(self, actor: Actor, holiday_id: str) -> HolidayResult:
        """Skip any orders of an existing holiday that are still scheduled."""
        authorize(actor, Capability.MANAGE_HOLIDAYS)
        holiday = await self._get_owned(actor, holiday_id)
        return await self._apply(holiday)

    async def _apply(self, holiday: VendorHolidayTable) -> HolidayResult:
        result = HolidayResult(
            holiday_id=holiday.holiday_id,
            vendor_id=holiday.vendor_id,
            holiday_date=holiday.holiday_date,
            slot=holiday.slot,
        )
        async with unit_of_work(self._session):
            orders = await self._orders.list_scheduled_for_vendor(
                holiday.vendor_id, holiday.holiday_date, holiday.slot
            )
            subs: dict[str, SubscriptionTable] = {}
            for order in orders:
                sub = subs.get(order.subscription_id) or await self._subs.get(order.subscription_id)
                if sub is None:
                    raise NotFound("subscription", order.subscription_id)
                subs[order.subscription_id] = sub
                order.status = OrderStatus.SKIPPED_BY_VENDOR.value
                await self._ledger.grant(
                    sub,
                    CreditReason.VENDOR_SKIP,
                    source_order_id=order.order_id,
                    note=holiday.reason,
                )
                result.orders_affected += 1
                result.credits_created += 1

        logger.info(
            "Holiday %s applied: %d order(s) skipped by vendor, %d credit(s) granted",
            holiday.holiday_id,
            result.orders_affected,
            result.credits_created,
        )
        return result

    async def _get_owned(self, actor: Actor, holiday_id: str) -> VendorHolidayTable:
        holiday = await self._holidays.get(holiday_id)
        if holiday is None:
            raise NotFound("vendor_holiday", holiday_id)
        ensure_owner(actor, holiday.vendor_id, "vendor holiday")
        return holiday

    async def list_holidays(
        self,
        actor: Actor,
        vendor_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[VendorHolidayTable]:
        authorize(actor, Capability.MANAGE_HOLIDAYS)
        ensure_owner(actor, vendor_id, "vendor")
        return await self._holidays.list_for_vendor(vendor_id, start, end)

    async def delete_holiday(self, actor: Actor, holiday_id: str) -> bool:
        """Remove a holiday declaration.  Orders already skipped are not reinstated."""
        authorize(actor, Capability.MANAGE_HOLIDAYS)
        async with unit_of_work(self._session):
            holiday = await self._get_owned(actor, holiday_id)
            deleted = await self._holidays.delete(holiday.holiday_id)
        logger.info("Holiday %s deleted by %s", holiday_id, actor.subject)
        return deleted

"""Order materialisation for paid cycles.

Turns a cycle's subscriptions into dated ``scheduled`` orders.  Generation is
idempotent and safe to run concurrently: every insert is guarded by an
existence check and, as the final arbiter, the unique key on
``(subscription_id, service_date, slot)`` with ``ON CONFLICT DO NOTHING``.

A single failed insert never aborts the run.  On PostgreSQL each insert runs
inside a SAVEPOINT so the failure leaves the surrounding transaction usable;
the failure is logged with the subscription and date and counted.

Capacity is not enforced here; capacity is checked when trials are booked.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock
from meal_engine.errors import NotFound
from meal_engine.models.enums import GroupStatus
from meal_engine.models.results import BackfillResult, GenerationResult
from meal_engine.scheduling.cycles import iter_dates, mask_includes
from meal_engine.state.database import savepoint
from meal_engine.state.repository import (
    CycleRepository,
    OrderRepository,
    SubscriptionGroupRepository,
    SubscriptionRepository,
    VendorHolidayRepository,
)
from meal_engine.state.tables import SubscriptionGroupTable, SubscriptionTable

logger = logging.getLogger(__name__)


class OrderGenerator:
    """Materialise orders for cycles.

    Parameters
    ----------
    session:
        Session whose transaction the inserts join.  The caller commits.
    clock:
        Time source for order timestamps.
    """

    def __init__(self, session: AsyncSession, clock: Clock) -> None:
        self._session = session
        self._clock = clock
        self._cycles = CycleRepository(session)
        self._groups = SubscriptionGroupRepository(session)
        self._subs = SubscriptionRepository(session)
        self._orders = OrderRepository(session)
        self._holidays = VendorHolidayRepository(session)

    async def generate_for_cycle(self, cycle_id: str) -> GenerationResult:
        """Create every missing order of *cycle_id*.

        Walks ``[max(cycle_start, group.start_date, service_start), cycle_end]``
        for each active subscription of the group, on the subscription's
        weekdays, skipping vendor holidays (whole-day or slot-specific).

        Raises
        ------
        NotFound
            If the cycle or its group does not exist.
        """
        cycle = await self._cycles.get(cycle_id)
        if cycle is None:
            raise NotFound("cycle", cycle_id)
        group = await self._groups.get(cycle.group_id)
        if group is None:
            raise NotFound("subscription_group", cycle.group_id)

        result = GenerationResult(cycle_id=cycle_id)
        if group.status != GroupStatus.ACTIVE.value:
            logger.info("Group %s is %s; no orders generated for cycle %s", group.group_id, group.status, cycle_id)
            return result

        window_start = max(cycle.cycle_start, group.start_date, cycle.service_start)
        if window_start > cycle.cycle_end:
            return result

        holidays = await self._holidays.list_for_vendor(group.vendor_id, window_start, cycle.cycle_end)
        whole_day = {h.holiday_date for h in holidays if h.slot is None}
        slot_days = {(h.holiday_date, h.slot) for h in holidays if h.slot is not None}

        subscriptions = await self._subs.list_for_group(group.group_id, status=GroupStatus.ACTIVE.value)
        now = self._clock.now()

        for sub in subscriptions:
            for day in iter_dates(window_start, cycle.cycle_end):
                if not mask_includes(sub.weekday_mask, day):
                    continue
                if day in whole_day or (day, sub.slot) in slot_days:
                    result.holiday_suppressed += 1
                    continue
                await self._insert_one(result, sub, group, day, now)

        logger.info(
            "Generated orders for cycle %s: created=%d existing=%d holiday_suppressed=%d errors=%d",
            cycle_id,
            result.created,
            result.existing,
            result.holiday_suppressed,
            result.errors,
        )
        return result

    async def _insert_one(
        self,
        result: GenerationResult,
        sub: SubscriptionTable,
        group: SubscriptionGroupTable,
        day: date,
        now: datetime,
    ) -> None:
        try:
            if await self._orders.exists(sub.subscription_id, day, sub.slot):
                result.existing += 1
                return
            async with savepoint(self._session):
                inserted = await self._orders.insert_if_absent(
                    order_id=uuid.uuid4().hex,
                    subscription_id=sub.subscription_id,
                    group_id=group.group_id,
                    consumer_id=group.consumer_id,
                    vendor_id=group.vendor_id,
                    service_date=day,
                    slot=sub.slot,
                    delivery_address_id=group.delivery_address_id,
                    now=now,
                )
        except SQLAlchemyError:
            result.errors += 1
            logger.error(
                "Failed to create order for subscription %s on %s (%s)",
                sub.subscription_id,
                day.isoformat(),
                sub.slot,
                exc_info=True,
            )
            return

        if inserted:
            result.created += 1
        else:
            # Lost the race to a concurrent generator.
            result.existing += 1

    async def generate_for_paid_cycles(self, today: date) -> BackfillResult:
        """Backfill every paid cycle of an active group that has not yet ended.

        A cycle that fails as a whole is logged and listed in
        ``failed_cycles``; the sweep continues with the next cycle.
        """
        backfill = BackfillResult()
        cycles = await self._cycles.list_paid_open(today)
        for cycle in cycles:
            try:
                backfill.add(await self.generate_for_cycle(cycle.cycle_id))
            except (SQLAlchemyError, NotFound):
                backfill.failed_cycles.append(cycle.cycle_id)
                logger.error("Order backfill failed for cycle %s", cycle.cycle_id, exc_info=True)
        logger.info(
            "Order backfill complete: cycles=%d created=%d failed_cycles=%d",
            backfill.cycles,
            backfill.created,
            len(backfill.failed_cycles),
        )
        return backfill

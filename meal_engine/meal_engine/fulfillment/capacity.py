"""Vendor capacity checks per (slot, date).

Capacity is the vendor's configured ``max_meals_per_day`` for a slot.  Orders
in a capacity-occupying status (scheduled through delivered) count against
it; skipped and cancelled orders free their seat.  A missing slot
configuration or a limit of ``0`` means the vendor is unlimited.

These checks are advisory reads: they take no locks, so two concurrent
bookings may both observe the last free seat.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.errors import LimitExceeded
from meal_engine.models.results import CapacityCheck
from meal_engine.state.repository import OrderRepository, VendorSlotRepository

logger = logging.getLogger(__name__)


class CapacityChecker:
    """Read vendor capacity for one or many service dates."""

    def __init__(self, session: AsyncSession) -> None:
        self._slots = VendorSlotRepository(session)
        self._orders = OrderRepository(session)

    async def check(self, vendor_id: str, slot: str, service_date: date) -> CapacityCheck:
        results = await self.check_many(vendor_id, slot, [service_date])
        return results[service_date]

    async def check_many(
        self,
        vendor_id: str,
        slot: str,
        days: Sequence[date],
    ) -> dict[date, CapacityCheck]:
        """Check capacity for several dates with one grouped count query.

        Parameters
        ----------
        vendor_id:
            Vendor whose kitchen capacity is checked.
        slot:
            Meal slot.
        days:
            Service dates to check; duplicates are collapsed.

        Returns
        -------
        dict[date, CapacityCheck]
            One entry per distinct requested date.
        """
        unique_days = sorted(set(days))
        config = await self._slots.get(vendor_id, slot, enabled_only=False)
        limit = config.max_meals_per_day if config is not None else 0

        if limit <= 0:
            return {
                day: CapacityCheck(service_date=day, slot=slot, available=True, current=0, max=0, remaining=0)
                for day in unique_days
            }

        usage = await self._orders.count_capacity_usage(vendor_id, slot, unique_days)
        checks: dict[date, CapacityCheck] = {}
        for day in unique_days:
            current = usage.get(day, 0)
            remaining = max(0, limit - current)
            checks[day] = CapacityCheck(
                service_date=day,
                slot=slot,
                available=current < limit,
                current=current,
                max=limit,
                remaining=remaining,
            )
        return checks

    async def reserve(self, vendor_id: str, slot: str, service_date: date, quantity: int = 1) -> CapacityCheck:
        """Verify that *quantity* more meals fit, raising :class:`LimitExceeded` otherwise."""
        check = await self.check(vendor_id, slot, service_date)
        if check.max > 0 and check.remaining < quantity:
            logger.info(
                "Capacity exhausted: vendor=%s slot=%s date=%s current=%d max=%d requested=%d",
                vendor_id,
                slot,
                service_date,
                check.current,
                check.max,
                quantity,
            )
            raise LimitExceeded(
                f"Vendor has no {slot} capacity left on {service_date.isoformat()}",
                context={
                    "service_date": service_date,
                    "slot": slot,
                    "current": check.current,
                    "limit": check.max,
                    "remaining": check.remaining,
                    "requested": quantity,
                },
            )
        return check

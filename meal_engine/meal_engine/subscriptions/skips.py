"""Customer meal skips.

A skip marks one scheduled order ``skipped_by_customer``.  While the number of
skips recorded for the (subscription, slot) within the billing cycle that
contains the service date is below the plan's per-slot ``skip_limits``, the
skip also grants one ``skip`` credit; beyond the limit the order is still
skipped but no credit is granted.

Skips close ``skip_cutoff_hours`` before the vendor's delivery window opens
on the service date.  Vendor holiday credits never create skip records and
so never count toward the limit.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock, local_instant
from meal_engine.config import EngineSettings
from meal_engine.errors import ConflictState, CutoffPassed, InvalidWindow, NotFound
from meal_engine.identity import Actor, Capability, authorize, ensure_owner
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import CreditReason, GroupStatus, OrderStatus
from meal_engine.models.results import SkipAllowance, SkipResult
from meal_engine.scheduling.cycles import compute_cycle
from meal_engine.state.database import unit_of_work
from meal_engine.state.repository import (
    OrderRepository,
    PlanRepository,
    SkipRepository,
    SubscriptionGroupRepository,
    SubscriptionRepository,
    VendorSlotRepository,
)
from meal_engine.state.tables import PlanTable, SubscriptionTable

logger = logging.getLogger(__name__)


class SkipEngine:
    """Skip scheduled meals and report the remaining credited skips."""

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._subs = SubscriptionRepository(session)
        self._groups = SubscriptionGroupRepository(session)
        self._plans = PlanRepository(session)
        self._orders = OrderRepository(session)
        self._skips = SkipRepository(session)
        self._slots = VendorSlotRepository(session)
        self._ledger = CreditLedger(session, clock, settings)

    async def cutoff_for(self, vendor_id: str, service_date: date, slot: str) -> datetime:
        """Instant after which *slot* on *service_date* can no longer be skipped.

        Raises
        ------
        NotFound
            If the vendor has no enabled configuration for *slot*.
        """
        config = await self._slots.get(vendor_id, slot)
        if config is None:
            raise NotFound("vendor_slot", f"{vendor_id}/{slot}")
        window_start = local_instant(service_date, config.delivery_window_start, self._settings.tz)
        return window_start - timedelta(hours=self._settings.skip_cutoff_hours)

    async def _load_subscription(self, actor: Actor, subscription_id: str) -> SubscriptionTable:
        sub = await self._subs.get(subscription_id)
        if sub is None:
            raise NotFound("subscription", subscription_id)
        ensure_owner(actor, sub.consumer_id, "subscription")
        return sub

    async def _load_plan(self, sub: SubscriptionTable, *, lock: bool = False) -> PlanTable:
        group = await self._groups.get(sub.group_id, for_update=lock)
        if group is None:
            raise NotFound("subscription_group", sub.group_id)
        plan = await self._plans.get(group.plan_id)
        if plan is None:
            raise NotFound("plan", group.plan_id)
        return plan

    async def skip(
        self,
        actor: Actor,
        subscription_id: str,
        service_date: date,
        slot: str | None = None,
    ) -> SkipResult:
        """Skip the order of *subscription_id* on *service_date*.

        Parameters
        ----------
        actor:
            Caller; must hold ``skip:meals`` and own the subscription.
        subscription_id:
            The slot-level subscription.
        service_date:
            Delivery date to skip.
        slot:
            Optional; when given it must match the subscription's slot.

        Returns
        -------
        SkipResult
            Whether a credit was granted and the cycle's skip counters.

        Raises
        ------
        NotFound
            Unknown subscription, no order on that date, or no vendor slot configuration.
        ConflictState
            The subscription is cancelled or the order is no longer scheduled.
        CutoffPassed
            ``now`` is at or after the skip cutoff; ``context["cutoff_at"]`` carries it.
        """
        authorize(actor, Capability.SKIP_MEALS)
        sub = await self._load_subscription(actor, subscription_id)
        if slot is not None and slot != sub.slot:
            raise InvalidWindow(
                f"Subscription {subscription_id} delivers {sub.slot}, not {slot}",
                context={"slot": slot, "allowed_slots": [sub.slot]},
            )
        # A paused subscription still delivers its orders before the pause date.
        if sub.status == GroupStatus.CANCELLED.value:
            raise ConflictState(
                f"Subscription {subscription_id} is {sub.status}",
                context={"status": sub.status},
            )

        async with unit_of_work(self._session):
            plan = await self._load_plan(sub, lock=True)
            order = await self._orders.get_by_key(sub.subscription_id, service_date, sub.slot)
            if order is None:
                raise NotFound("order", f"{subscription_id}/{service_date.isoformat()}/{sub.slot}")
            if order.status == OrderStatus.SKIPPED_BY_CUSTOMER.value:
                raise ConflictState(
                    f"The {sub.slot} order on {service_date.isoformat()} is already skipped",
                    context={"order_id": order.order_id, "status": order.status},
                )
            if order.status != OrderStatus.SCHEDULED.value:
                raise ConflictState(
                    f"Order {order.order_id} is {order.status} and cannot be skipped",
                    context={"order_id": order.order_id, "status": order.status},
                )

            now = self._clock.now()
            cutoff_at = await self.cutoff_for(sub.vendor_id, service_date, sub.slot)
            if now >= cutoff_at:
                raise CutoffPassed(
                    f"Skips for {sub.slot} on {service_date.isoformat()} closed at {cutoff_at.isoformat()}",
                    context={"cutoff_at": cutoff_at, "service_date": service_date, "slot": sub.slot},
                )

            cycle = compute_cycle(plan.period_type, service_date)
            skip_limit = int(plan.skip_limits.get(sub.slot, 0))
            used_before = await self._skips.count_in_cycle(sub.subscription_id, sub.slot, cycle.cycle_start)
            credited = used_before < skip_limit

            order.status = OrderStatus.SKIPPED_BY_CUSTOMER.value
            credit_id: str | None = None
            if credited:
                credit = await self._ledger.grant(
                    sub,
                    CreditReason.SKIP,
                    source_order_id=order.order_id,
                )
                credit_id = credit.credit_id
            await self._skips.create(
                subscription_id=sub.subscription_id,
                order_id=order.order_id,
                slot=sub.slot,
                service_date=service_date,
                cycle_start=cycle.cycle_start,
                credited=credited,
                credit_id=credit_id,
                created_at=now,
            )
            order_id = order.order_id

        skips_used = used_before + 1
        logger.info(
            "Order %s skipped by %s (credited=%s, %d/%d skips used in cycle %s)",
            order_id,
            actor.subject,
            credited,
            skips_used,
            skip_limit,
            cycle.cycle_start.isoformat(),
        )
        return SkipResult(
            order_id=order_id,
            subscription_id=sub.subscription_id,
            service_date=service_date,
            slot=sub.slot,
            credited=credited,
            credit_id=credit_id,
            cutoff_at=cutoff_at,
            skip_limit=skip_limit,
            skips_used=skips_used,
            remaining_credited_skips=max(0, skip_limit - skips_used),
        )

    async def allowance(self, actor: Actor, subscription_id: str, on_date: date | None = None) -> SkipAllowance:
        """Skip limit and usage for the cycle containing *on_date* (default today)."""
        authorize(actor, Capability.READ_SUBSCRIPTIONS)
        sub = await self._load_subscription(actor, subscription_id)
        plan = await self._load_plan(sub)
        day = on_date or self._clock.today(self._settings.tz)
        cycle = compute_cycle(plan.period_type, day)
        skip_limit = int(plan.skip_limits.get(sub.slot, 0))
        used = await self._skips.count_in_cycle(sub.subscription_id, sub.slot, cycle.cycle_start)
        return SkipAllowance(
            subscription_id=sub.subscription_id,
            slot=sub.slot,
            cycle_start=cycle.cycle_start,
            cycle_end=cycle.cycle_end,
            skip_limit=skip_limit,
            skips_used=used,
            remaining_credited_skips=max(0, skip_limit - used),
        )

"""Pause, resume and cancel transitions for subscription groups.

Each transition has a side-effect-free ``preview_*`` and a committing
counterpart.  Every commit runs inside an explicit unit of work: the group
row is locked (``SELECT ... FOR UPDATE`` on PostgreSQL), the request is
re-validated against the locked state, and all order, credit and status
changes are committed together or not at all.

Valuation uses each subscription's unit price from its most recent paid
invoice line, falling back to the vendor's current price for the slot.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock, local_instant
from meal_engine.config import EngineSettings
from meal_engine.errors import ConflictState, CutoffPassed, InvalidWindow, NotFound
from meal_engine.identity import SYSTEM_ACTOR, Actor, Capability, authorize, ensure_owner
from meal_engine.ledger.credits import CreditLedger, remaining_quantity
from meal_engine.models.enums import (
    CreditReason,
    CreditStatus,
    GlobalCreditSource,
    GlobalCreditStatus,
    GroupStatus,
    InvoiceStatus,
    OrderStatus,
    RefundPreference,
)
from meal_engine.models.results import (
    AutoCancelResult,
    CancelPreview,
    CancelResult,
    PausePreview,
    PauseResult,
    RefundRequest,
    ResumePreview,
    ResumeResult,
    ResumeScenario,
)
from meal_engine.pricing import ZERO, to_money, unit_price
from meal_engine.scheduling.cycles import compute_cycle, next_cycle
from meal_engine.state.database import unit_of_work
from meal_engine.state.repository import (
    CreditRepository,
    CycleRepository,
    InvoiceRepository,
    OrderRepository,
    PlanRepository,
    SubscriptionGroupRepository,
    SubscriptionRepository,
    VendorSlotRepository,
)
from meal_engine.state.tables import CreditTable, OrderTable, SubscriptionGroupTable, SubscriptionTable

logger = logging.getLogger(__name__)

PAUSE_TIMEOUT_REASON = "pause_timeout"


class SubscriptionLifecycle:
    """Group-level state machine: ``active <-> paused -> cancelled``.

    Parameters
    ----------
    session:
        Session used for reads and for the units of work.
    clock:
        Time source for notice windows and timestamps.
    settings:
        Notice periods, ``max_pause_days`` and pricing inputs.
    """

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._groups = SubscriptionGroupRepository(session)
        self._subs = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._cycles = CycleRepository(session)
        self._orders = OrderRepository(session)
        self._invoices = InvoiceRepository(session)
        self._credits = CreditRepository(session)
        self._slots = VendorSlotRepository(session)
        self._ledger = CreditLedger(session, clock, settings)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _local_midnight(self, day: date) -> datetime:
        return local_instant(day, time(0), self._settings.tz)

    def _earliest_date(self, notice_hours: int) -> date:
        """First calendar date whose local midnight is at least *notice_hours* away."""
        earliest = self._clock.now() + timedelta(hours=notice_hours)
        day = earliest.astimezone(self._settings.tz).date()
        if self._local_midnight(day) < earliest:
            day += timedelta(days=1)
        return day

    def _check_notice(self, requested: date, notice_hours: int, action: str) -> None:
        earliest = self._clock.now() + timedelta(hours=notice_hours)
        if self._local_midnight(requested) < earliest:
            earliest_date = self._earliest_date(notice_hours)
            raise CutoffPassed(
                f"A {action} needs {notice_hours}h notice; the earliest {action} date is {earliest_date.isoformat()}",
                context={"earliest_date": earliest_date, "requested": requested, "notice_hours": notice_hours},
            )

    async def _load_group(
        self,
        actor: Actor,
        group_id: str,
        *,
        lock: bool = False,
    ) -> SubscriptionGroupTable:
        group = await self._groups.get(group_id, for_update=lock)
        if group is None:
            raise NotFound("subscription_group", group_id)
        ensure_owner(actor, group.consumer_id, "subscription group")
        return group

    async def _unit_prices(
        self,
        group: SubscriptionGroupTable,
        subscriptions: Iterable[SubscriptionTable],
    ) -> dict[str, Decimal]:
        """Unit price per subscription id."""
        subs = list(subscriptions)
        prices = await self._invoices.latest_paid_unit_prices([s.subscription_id for s in subs])
        for sub in subs:
            if sub.subscription_id in prices:
                continue
            config = await self._slots.get(group.vendor_id, sub.slot, enabled_only=False)
            prices[sub.subscription_id] = unit_price(config.base_price, self._settings) if config else ZERO
        return prices

    async def _cancel_orders(self, orders: Iterable[OrderTable]) -> int:
        count = 0
        for order in orders:
            order.status = OrderStatus.CANCELLED.value
            count += 1
        await self._session.flush()
        return count

    async def _set_status(self, group: SubscriptionGroupTable, status: GroupStatus) -> None:
        group.status = status.value
        await self._subs.set_status_for_group(group.group_id, status.value)

    async def _void_unpaid_invoices(self, group_id: str, from_date: date) -> tuple[int, Decimal]:
        """Void unpaid invoices of cycles still running on *from_date*.

        Returns the number voided and the value of the credits that had been
        consumed against them; those credits stay ``used``.
        """
        invoices = await self._invoices.list_unpaid_for_group(group_id, from_date)
        if not invoices:
            return 0, ZERO
        value = await self._ledger.applied_value(i.invoice_id for i in invoices)
        for invoice in invoices:
            invoice.status = InvoiceStatus.VOID.value
        await self._session.flush()
        logger.info(
            "Voided %d unpaid invoice(s) of group %s; %s of applied credit returned",
            len(invoices),
            group_id,
            value,
        )
        return len(invoices), value

    # ------------------------------------------------------------------
    # Pause
    # ------------------------------------------------------------------

    def _validate_pause(self, group: SubscriptionGroupTable, pause_date: date) -> None:
        if group.status != GroupStatus.ACTIVE.value:
            raise ConflictState(
                f"Only active groups can be paused; group {group.group_id} is {group.status}",
                context={"status": group.status},
            )
        self._check_notice(pause_date, self._settings.pause_notice_hours, "pause")
        latest = self._clock.today(self._settings.tz) + timedelta(days=self._settings.max_pause_days)
        if pause_date > latest:
            raise InvalidWindow(
                f"Pause date must be on or before {latest.isoformat()}",
                context={"latest_date": latest, "requested": pause_date},
            )

    async def preview_pause(self, actor: Actor, group_id: str, pause_date: date) -> PausePreview:
        """Orders that would be cancelled from *pause_date* and the credits they would yield."""
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        group = await self._load_group(actor, group_id)
        self._validate_pause(group, pause_date)

        subs = await self._subs.list_for_group(group_id)
        prices = await self._unit_prices(group, subs)
        orders = await self._orders.list_for_group(group_id, status=OrderStatus.SCHEDULED.value, start=pause_date)
        total = sum((prices.get(o.subscription_id, ZERO) for o in orders), ZERO)
        now = self._clock.now()
        return PausePreview(
            group_id=group_id,
            pause_date=pause_date,
            orders_count=len(orders),
            credits_count=len(orders),
            unit_prices={s.slot: prices[s.subscription_id] for s in subs},
            total_amount=to_money(total),
            credit_expires_at=self._ledger.default_expiry(now),
            auto_cancel_on=(now + timedelta(days=self._settings.max_pause_days)).astimezone(self._settings.tz).date(),
        )

    async def pause(self, actor: Actor, group_id: str, pause_date: date) -> PauseResult:
        """Pause *group_id* from *pause_date*.

        Cancels every scheduled order on or after *pause_date* and grants one
        ``pause_mid_cycle`` credit per cancelled order.

        Raises
        ------
        CutoffPassed
            *pause_date* is inside the pause notice window (``earliest_date`` in context).
        InvalidWindow
            *pause_date* is beyond ``max_pause_days`` (``latest_date`` in context).
        ConflictState
            The group is not active.
        """
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        async with unit_of_work(self._session):
            group = await self._load_group(actor, group_id, lock=True)
            self._validate_pause(group, pause_date)

            now = self._clock.now()
            subs = {s.subscription_id: s for s in await self._subs.list_for_group(group_id)}
            orders = await self._orders.list_for_group(
                group_id, status=OrderStatus.SCHEDULED.value, start=pause_date
            )
            cancelled = await self._cancel_orders(orders)
            credit_ids: list[str] = []
            for order in orders:
                credit = await self._ledger.grant(
                    subs[order.subscription_id],
                    CreditReason.PAUSE_MID_CYCLE,
                    source_order_id=order.order_id,
                )
                credit_ids.append(credit.credit_id)

            await self._set_status(group, GroupStatus.PAUSED)
            group.paused_at = now
            group.pause_date = pause_date
            group.resume_at = None
            status = group.status

        logger.info(
            "Group %s paused from %s by %s: %d order(s) cancelled, %d credit(s) granted",
            group_id,
            pause_date.isoformat(),
            actor.subject,
            cancelled,
            len(credit_ids),
        )
        return PauseResult(
            group_id=group_id,
            status=status,
            pause_date=pause_date,
            paused_at=now,
            orders_cancelled=cancelled,
            credits_created=len(credit_ids),
            credit_ids=credit_ids,
        )

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def _validate_resume(self, group: SubscriptionGroupTable, resume_date: date) -> ResumeScenario:
        if group.status != GroupStatus.PAUSED.value:
            raise ConflictState(
                f"Only paused groups can be resumed; group {group.group_id} is {group.status}",
                context={"status": group.status},
            )
        self._check_notice(resume_date, self._settings.resume_notice_hours, "resume")
        if group.pause_date is not None and resume_date < group.pause_date:
            raise InvalidWindow(
                f"Resume date must be on or after the pause date {group.pause_date.isoformat()}",
                context={"earliest_date": group.pause_date, "requested": resume_date},
            )
        paused_on = (group.paused_at or self._clock.now()).astimezone(self._settings.tz).date()
        latest = paused_on + timedelta(days=self._settings.max_pause_days)
        if resume_date > latest:
            raise InvalidWindow(
                f"Resume date must be on or before {latest.isoformat()}",
                context={"latest_date": latest, "requested": resume_date},
            )

        plan = await self._plans.get(group.plan_id)
        if plan is None:
            raise NotFound("plan", group.plan_id)
        current = compute_cycle(plan.period_type, self._clock.today(self._settings.tz))
        following = next_cycle(current)
        target = compute_cycle(plan.period_type, resume_date)
        if current.contains(resume_date):
            name = "same_cycle"
        elif resume_date == following.cycle_start:
            name = "next_cycle_start"
        elif following.contains(resume_date):
            name = "mid_next_cycle"
        else:
            name = "future_cycle"
        return ResumeScenario(
            name=name,
            cycle_start=target.cycle_start,
            cycle_end=target.cycle_end,
            service_start=resume_date,
        )

    async def _reinstatable(
        self,
        group_id: str,
        resume_date: date,
        cycle_end: date,
    ) -> list[tuple[OrderTable, CreditTable]]:
        """Pause-cancelled orders from *resume_date* whose credit is still untouched."""
        orders = await self._orders.list_for_group(
            group_id, status=OrderStatus.CANCELLED.value, start=resume_date, end=cycle_end
        )
        credits = await self._credits.list_by_source_orders(
            [o.order_id for o in orders], CreditReason.PAUSE_MID_CYCLE.value
        )
        by_order = {
            c.source_order_id: c
            for c in credits
            if c.status == CreditStatus.AVAILABLE.value and c.consumed_quantity == 0 and remaining_quantity(c) > 0
        }
        return [(o, by_order[o.order_id]) for o in orders if o.order_id in by_order]

    async def preview_resume(self, actor: Actor, group_id: str, resume_date: date) -> ResumePreview:
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        group = await self._load_group(actor, group_id)
        scenario = await self._validate_resume(group, resume_date)
        reinstate: list[tuple[OrderTable, CreditTable]] = []
        existing = await self._cycles.get_containing(group_id, resume_date)
        if existing is not None:
            reinstate = await self._reinstatable(group_id, resume_date, existing.cycle_end)
        return ResumePreview(
            group_id=group_id,
            resume_date=resume_date,
            scenario=scenario,
            orders_to_reinstate=len(reinstate),
            credits_to_void=len(reinstate),
        )

    async def resume(self, actor: Actor, group_id: str, resume_date: date) -> ResumeResult:
        """Resume a paused group on *resume_date*.

        When a provisioned cycle already covers *resume_date*, orders the
        pause cancelled from that date are reinstated and their untouched
        credits voided.  Otherwise the group's renewal is moved so the cycle
        containing *resume_date* is provisioned with service starting on it.
        """
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        async with unit_of_work(self._session):
            group = await self._load_group(actor, group_id, lock=True)
            scenario = await self._validate_resume(group, resume_date)

            reinstated = 0
            voided = 0
            existing = await self._cycles.get_containing(group_id, resume_date)
            if existing is not None:
                for order, credit in await self._reinstatable(group_id, resume_date, existing.cycle_end):
                    order.status = OrderStatus.SCHEDULED.value
                    voided += await self._ledger.void_credits([credit], note="order reinstated on resume")
                    reinstated += 1
                if existing.service_start > resume_date:
                    existing.service_start = resume_date
                group.resume_at = None
            else:
                group.renewal_date = scenario.cycle_start
                group.resume_at = resume_date

            await self._set_status(group, GroupStatus.ACTIVE)
            group.paused_at = None
            group.pause_date = None
            renewal_date = group.renewal_date

        logger.info(
            "Group %s resumed on %s (%s): %d order(s) reinstated",
            group_id,
            resume_date.isoformat(),
            scenario.name,
            reinstated,
        )
        return ResumeResult(
            group_id=group_id,
            status=GroupStatus.ACTIVE.value,
            resume_date=resume_date,
            scenario=scenario.name,
            orders_reinstated=reinstated,
            credits_voided=voided,
            renewal_date=renewal_date,
        )

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def _validate_cancel(self, group: SubscriptionGroupTable, cancel_date: date) -> None:
        if group.status == GroupStatus.CANCELLED.value:
            raise ConflictState(
                f"Group {group.group_id} is already cancelled",
                context={"status": group.status},
            )
        self._check_notice(cancel_date, self._settings.cancel_notice_hours, "cancellation")

    async def preview_cancel(self, actor: Actor, group_id: str, cancel_date: date) -> CancelPreview:
        """Value of the meals and credits a cancellation from *cancel_date* would return."""
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        group = await self._load_group(actor, group_id)
        self._validate_cancel(group, cancel_date)

        subs = await self._subs.list_for_group(group_id)
        prices = await self._unit_prices(group, subs)
        orders = await self._orders.list_for_group(group_id, status=OrderStatus.SCHEDULED.value, start=cancel_date)
        meals_value = to_money(sum((prices.get(o.subscription_id, ZERO) for o in orders), ZERO))
        credits, credit_value = await self._ledger.available_value(subs, prices)
        unpaid = await self._invoices.list_unpaid_for_group(group_id, cancel_date)
        applied_value = await self._ledger.applied_value(i.invoice_id for i in unpaid)
        return CancelPreview(
            group_id=group_id,
            cancel_date=cancel_date,
            orders_count=len(orders),
            remaining_meals_value=meals_value,
            available_credits_count=len(credits),
            available_credit_value=credit_value,
            unpaid_invoices_count=len(unpaid),
            applied_credit_value=applied_value,
            total_refund=to_money(meals_value + credit_value + applied_value),
        )

    async def cancel(
        self,
        actor: Actor,
        group_id: str,
        cancel_date: date,
        refund_preference: RefundPreference,
        reason: str | None = None,
        refund_destination: str | None = None,
    ) -> CancelResult:
        """Cancel *group_id* from *cancel_date*.

        Scheduled orders from *cancel_date* are cancelled and unpaid invoices
        of cycles still running on that date are voided.  The orders' value,
        the value of every available credit and the value of credits already
        applied to the voided invoices become one global credit.  With
        ``refund`` preference the global credit is ``pending_refund`` and a
        :class:`RefundRequest` is returned for the payment gateway worker.
        """
        authorize(actor, Capability.MANAGE_SUBSCRIPTIONS)
        preference = RefundPreference(refund_preference)
        async with unit_of_work(self._session):
            group = await self._load_group(actor, group_id, lock=True)
            self._validate_cancel(group, cancel_date)

            subs = await self._subs.list_for_group(group_id)
            prices = await self._unit_prices(group, subs)
            orders = await self._orders.list_for_group(
                group_id, status=OrderStatus.SCHEDULED.value, start=cancel_date
            )
            meals_value = to_money(sum((prices.get(o.subscription_id, ZERO) for o in orders), ZERO))
            cancelled = await self._cancel_orders(orders)
            invoices_voided, applied_value = await self._void_unpaid_invoices(group_id, cancel_date)

            if preference == RefundPreference.REFUND:
                source, gc_status = GlobalCreditSource.CANCEL_REFUND, GlobalCreditStatus.PENDING_REFUND
            else:
                source, gc_status = GlobalCreditSource.CANCEL_CREDIT, GlobalCreditStatus.AVAILABLE
            global_credit, voided = await self._ledger.convert_to_global(
                subs,
                prices,
                consumer_id=group.consumer_id,
                source_type=source,
                group_id=group_id,
                status=gc_status,
                extra_amount=meals_value + applied_value,
                refund_destination=refund_destination if preference == RefundPreference.REFUND else None,
            )

            await self._set_status(group, GroupStatus.CANCELLED)
            group.cancelled_at = self._clock.now()
            group.cancel_reason = reason or "customer_request"

            refund_request = None
            if global_credit is not None and gc_status == GlobalCreditStatus.PENDING_REFUND:
                refund_request = RefundRequest(
                    global_credit_id=global_credit.global_credit_id,
                    consumer_id=group.consumer_id,
                    amount=global_credit.amount,
                    currency=global_credit.currency,
                    destination=refund_destination,
                )

        amount = global_credit.amount if global_credit is not None else ZERO
        logger.info(
            "Group %s cancelled from %s by %s: %d order(s) cancelled, %s returned as %s",
            group_id,
            cancel_date.isoformat(),
            actor.subject,
            cancelled,
            amount,
            preference.value,
        )
        return CancelResult(
            group_id=group_id,
            status=GroupStatus.CANCELLED.value,
            cancel_date=cancel_date,
            orders_cancelled=cancelled,
            credits_voided=voided,
            invoices_voided=invoices_voided,
            global_credit_id=global_credit.global_credit_id if global_credit is not None else None,
            refund_amount=to_money(amount),
            global_credit_status=GlobalCreditStatus(global_credit.status) if global_credit is not None else None,
            refund_request=refund_request,
        )

    # ------------------------------------------------------------------
    # Auto-cancel
    # ------------------------------------------------------------------

    async def auto_cancel_stale_pauses(self, actor: Actor = SYSTEM_ACTOR) -> AutoCancelResult:
        """Cancel every group paused for longer than ``max_pause_days``.

        Each group is cancelled in its own unit of work; a failure is logged
        and counted and the sweep moves on.  Only ``paused`` groups qualify,
        so re-running the sweep never cancels a group twice.
        """
        authorize(actor, Capability.RUN_MAINTENANCE)
        now = self._clock.now()
        cutoff = now - timedelta(days=self._settings.max_pause_days)
        candidates = [g.group_id for g in await self._groups.list_paused_since_before(cutoff)]

        result = AutoCancelResult(examined=len(candidates))
        for group_id in candidates:
            try:
                async with unit_of_work(self._session):
                    done = await self._auto_cancel_one(group_id, cutoff)
            except Exception:
                result.failed += 1
                result.failed_group_ids.append(group_id)
                logger.error("Auto-cancel failed for paused group %s", group_id, exc_info=True)
                continue
            if done:
                result.cancelled += 1
                result.cancelled_group_ids.append(group_id)

        logger.info(
            "Stale pause sweep: examined=%d cancelled=%d failed=%d",
            result.examined,
            result.cancelled,
            result.failed,
        )
        return result

    async def _auto_cancel_one(self, group_id: str, cutoff: datetime) -> bool:
        group = await self._groups.get(group_id, for_update=True)
        if group is None or group.status != GroupStatus.PAUSED.value:
            return False
        if group.paused_at is None or group.paused_at > cutoff:
            return False

        subs = await self._subs.list_for_group(group_id)
        prices = await self._unit_prices(group, subs)
        today = self._clock.today(self._settings.tz)
        orders = await self._orders.list_for_group(group_id, status=OrderStatus.SCHEDULED.value, start=today)
        meals_value = to_money(sum((prices.get(o.subscription_id, ZERO) for o in orders), ZERO))
        await self._cancel_orders(orders)
        # Nothing has been delivered since the pause date.
        _, applied_value = await self._void_unpaid_invoices(group_id, group.pause_date or today)
        global_credit, voided = await self._ledger.convert_to_global(
            subs,
            prices,
            consumer_id=group.consumer_id,
            source_type=GlobalCreditSource.PAUSE_AUTO_CANCEL,
            group_id=group_id,
            status=GlobalCreditStatus.AVAILABLE,
            extra_amount=meals_value + applied_value,
        )
        await self._set_status(group, GroupStatus.CANCELLED)
        group.cancelled_at = self._clock.now()
        group.cancel_reason = PAUSE_TIMEOUT_REASON
        logger.info(
            "Group %s auto-cancelled after pause timeout: %d credit(s) converted into %s",
            group_id,
            voided,
            global_credit.global_credit_id if global_credit is not None else "no global credit",
        )
        return True

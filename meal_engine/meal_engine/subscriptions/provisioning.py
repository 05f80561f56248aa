"""Subscription group provisioning, invoicing and renewal.

A group is created by the checkout collaborator with one subscription per
meal slot.  Each billing cycle of an active group gets exactly one cycle row
and one invoice; when the invoice is paid the cycle's orders are generated.

Invoice lines are sized from the delivery weekdays in the cycle's service
window minus vendor holidays already declared.  Available credits of the
subscription are consumed against the line at invoice creation, so a
renewal bills only the meals not already covered.  A zero-total invoice is
settled immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock
from meal_engine.config import EngineSettings
from meal_engine.errors import ConflictState, InvalidWindow, NotFound
from meal_engine.fulfillment.generator import OrderGenerator
from meal_engine.identity import SYSTEM_ACTOR, Actor, Capability, authorize, ensure_owner
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import GroupStatus, InvoiceStatus
from meal_engine.models.results import GenerationResult, InvoiceLineSummary, ProvisionResult, RenewalReport
from meal_engine.pricing import ZERO, cycle_amount, to_money, unit_price
from meal_engine.scheduling.cycles import Cycle, compute_cycle, count_scheduled_meals, weekdays_to_mask
from meal_engine.state.database import unit_of_work
from meal_engine.state.repository import (
    CycleRepository,
    InvoiceRepository,
    PlanRepository,
    SubscriptionGroupRepository,
    SubscriptionRepository,
    VendorHolidayRepository,
    VendorSlotRepository,
)
from meal_engine.state.tables import (
    CycleTable,
    InvoiceTable,
    PlanTable,
    SubscriptionGroupTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)

ZERO_TOTAL_REFERENCE = "zero-total"


@dataclass
class GroupView:
    """A group with its subscriptions and the cycle covering today, if any."""

    group: SubscriptionGroupTable
    subscriptions: list[SubscriptionTable]
    current_cycle: CycleTable | None


class SubscriptionProvisioner:
    """Create groups, provision cycles and react to invoice payment."""

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._plans = PlanRepository(session)
        self._slots = VendorSlotRepository(session)
        self._groups = SubscriptionGroupRepository(session)
        self._subs = SubscriptionRepository(session)
        self._cycles = CycleRepository(session)
        self._invoices = InvoiceRepository(session)
        self._holidays = VendorHolidayRepository(session)
        self._ledger = CreditLedger(session, clock, settings)
        self._generator = OrderGenerator(session, clock)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def create_group(
        self,
        actor: Actor,
        *,
        consumer_id: str,
        vendor_id: str,
        plan_id: str,
        start_date: date,
        slots: Mapping[str, Iterable[int]],
        delivery_address_id: str | None = None,
    ) -> ProvisionResult:
        """Create a group, its subscriptions and the first cycle with its invoice.

        Parameters
        ----------
        actor:
            Caller; must hold ``provision:subscriptions``.
        consumer_id, vendor_id, plan_id:
            The engagement being purchased.
        start_date:
            First delivery date; today or later.
        slots:
            Meal slot -> delivery weekdays (0 = Sunday ... 6 = Saturday).
        delivery_address_id:
            Opaque address reference copied onto every order.

        Raises
        ------
        NotFound
            Unknown plan, or the vendor has no enabled configuration for a slot.
        InvalidWindow
            No slots, a slot outside the plan, an empty or invalid weekday
            selection, or a start date in the past.
        """
        authorize(actor, Capability.PROVISION_SUBSCRIPTIONS)
        plan = await self._plans.get(plan_id)
        if plan is None or not plan.active:
            raise NotFound("plan", plan_id)
        today = self._clock.today(self._settings.tz)
        if start_date < today:
            raise InvalidWindow(
                f"Start date {start_date.isoformat()} is in the past",
                context={"earliest_date": today, "requested": start_date},
            )
        masks = await self._validate_slots(plan, vendor_id, slots)

        async with unit_of_work(self._session):
            first = compute_cycle(plan.period_type, start_date)
            group = await self._groups.create(
                consumer_id=consumer_id,
                vendor_id=vendor_id,
                plan_id=plan_id,
                start_date=start_date,
                renewal_date=first.renewal_date,
                delivery_address_id=delivery_address_id,
            )
            for slot, mask in masks.items():
                await self._subs.create(
                    group_id=group.group_id,
                    consumer_id=consumer_id,
                    vendor_id=vendor_id,
                    slot=slot,
                    weekday_mask=mask,
                )
            result = await self._provision_cycle(group, plan, first, service_start=start_date)

        logger.info(
            "Provisioned group %s for consumer %s with vendor %s (%s, slots=%s)",
            result.group_id,
            consumer_id,
            vendor_id,
            plan.period_type,
            ",".join(sorted(masks)),
        )
        return result

    async def _validate_slots(
        self,
        plan: PlanTable,
        vendor_id: str,
        slots: Mapping[str, Iterable[int]],
    ) -> dict[str, int]:
        if not slots:
            raise InvalidWindow("At least one meal slot is required", context={"allowed_slots": plan.allowed_slots})
        masks: dict[str, int] = {}
        for slot, weekdays in slots.items():
            if slot not in plan.allowed_slots:
                raise InvalidWindow(
                    f"Plan '{plan.name}' does not include {slot}",
                    context={"slot": slot, "allowed_slots": plan.allowed_slots},
                )
            if await self._slots.get(vendor_id, slot) is None:
                raise NotFound("vendor_slot", f"{vendor_id}/{slot}")
            try:
                mask = weekdays_to_mask(weekdays)
            except ValueError as exc:
                raise InvalidWindow(str(exc), context={"slot": slot}) from exc
            if mask == 0:
                raise InvalidWindow(f"No delivery weekdays selected for {slot}", context={"slot": slot})
            masks[slot] = mask
        return masks

    async def get_group(self, actor: Actor, group_id: str) -> GroupView:
        authorize(actor, Capability.READ_SUBSCRIPTIONS)
        group = await self._groups.get(group_id)
        if group is None:
            raise NotFound("subscription_group", group_id)
        ensure_owner(actor, group.consumer_id, "subscription group")
        subs = await self._subs.list_for_group(group_id)
        cycle = await self._cycles.get_containing(group_id, self._clock.today(self._settings.tz))
        return GroupView(group=group, subscriptions=subs, current_cycle=cycle)

    # ------------------------------------------------------------------
    # Cycles and invoices
    # ------------------------------------------------------------------

    async def _provision_cycle(
        self,
        group: SubscriptionGroupTable,
        plan: PlanTable,
        cycle: Cycle,
        *,
        service_start: date,
    ) -> ProvisionResult:
        existing = await self._cycles.get_by_start(group.group_id, cycle.cycle_start)
        if existing is not None:
            invoice = await self._invoices.get_for_cycle(existing.cycle_id)
            if invoice is None:
                raise NotFound("invoice", f"cycle {existing.cycle_id}")
            if group.renewal_date < existing.renewal_date:
                group.renewal_date = existing.renewal_date
            return await self._summary(group, existing, invoice, created=False)

        row = await self._cycles.create(
            group_id=group.group_id,
            period_type=plan.period_type,
            cycle_start=cycle.cycle_start,
            cycle_end=cycle.cycle_end,
            renewal_date=cycle.renewal_date,
            service_start=service_start,
            is_first_cycle=cycle.contains(group.start_date) and group.start_date != cycle.cycle_start,
        )
        invoice = await self._invoices.create(
            cycle_id=row.cycle_id,
            group_id=group.group_id,
            consumer_id=group.consumer_id,
            vendor_id=group.vendor_id,
            currency=self._settings.currency,
        )

        holidays = await self._holidays.list_for_vendor(group.vendor_id, service_start, cycle.cycle_end)
        subtotal = ZERO
        credits_amount = ZERO
        total = ZERO
        for sub in await self._subs.list_for_group(group.group_id, status=GroupStatus.ACTIVE.value):
            closed = {h.holiday_date for h in holidays if h.slot is None or h.slot == sub.slot}
            scheduled = count_scheduled_meals(service_start, cycle.cycle_end, sub.weekday_mask, closed)
            price = await self._price(group.vendor_id, sub.slot)
            applied = await self._ledger.consume(sub.subscription_id, sub.slot, scheduled, invoice.invoice_id)
            line_total = cycle_amount(scheduled, price, applied)
            await self._invoices.add_line(
                invoice_id=invoice.invoice_id,
                subscription_id=sub.subscription_id,
                slot=sub.slot,
                scheduled_meals=scheduled,
                credits_applied=applied,
                unit_price=price,
                line_total=line_total,
            )
            subtotal += scheduled * price
            credits_amount += applied * price
            total += line_total

        invoice.subtotal = to_money(subtotal)
        invoice.credits_amount = to_money(credits_amount)
        invoice.total_amount = to_money(total)
        group.renewal_date = cycle.renewal_date
        await self._session.flush()

        if invoice.total_amount <= ZERO:
            await self._settle(invoice, ZERO_TOTAL_REFERENCE)

        logger.info(
            "Provisioned cycle %s..%s for group %s: invoice %s total=%s status=%s",
            cycle.cycle_start.isoformat(),
            cycle.cycle_end.isoformat(),
            group.group_id,
            invoice.invoice_id,
            invoice.total_amount,
            invoice.status,
        )
        return await self._summary(group, row, invoice, created=True)

    async def _price(self, vendor_id: str, slot: str) -> Decimal:
        config = await self._slots.get(vendor_id, slot, enabled_only=False)
        if config is None:
            raise NotFound("vendor_slot", f"{vendor_id}/{slot}")
        return unit_price(config.base_price, self._settings)

    async def _summary(
        self,
        group: SubscriptionGroupTable,
        cycle: CycleTable,
        invoice: InvoiceTable,
        *,
        created: bool,
    ) -> ProvisionResult:
        lines = await self._invoices.list_lines(invoice.invoice_id)
        return ProvisionResult(
            group_id=group.group_id,
            cycle_id=cycle.cycle_id,
            cycle_start=cycle.cycle_start,
            cycle_end=cycle.cycle_end,
            service_start=cycle.service_start,
            invoice_id=invoice.invoice_id,
            invoice_status=invoice.status,
            total_amount=invoice.total_amount,
            credits_applied=sum(line.credits_applied for line in lines),
            created=created,
            lines=[
                InvoiceLineSummary(
                    subscription_id=line.subscription_id,
                    slot=line.slot,
                    scheduled_meals=line.scheduled_meals,
                    credits_applied=line.credits_applied,
                    billable_meals=line.billable_meals,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in lines
            ],
        )

    async def _settle(self, invoice: InvoiceTable, reference: str | None) -> GenerationResult | None:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = self._clock.now()
        invoice.payment_reference = reference
        await self._session.flush()
        if invoice.cycle_id is None:
            return None
        return await self._generator.generate_for_cycle(invoice.cycle_id)

    async def mark_invoice_paid(
        self,
        actor: Actor,
        invoice_id: str,
        reference: str | None = None,
    ) -> GenerationResult | None:
        """Record payment of an invoice and generate the cycle's orders.

        Idempotent: a redelivered payment for an already paid invoice changes
        nothing and returns ``None``.

        Raises
        ------
        ConflictState
            The invoice was voided by a cancellation, or it bills a cycle of a
            group that is paused or cancelled.  The gateway refunds the payment.
        """
        authorize(actor, Capability.PROCESS_PAYMENTS)
        async with unit_of_work(self._session):
            invoice = await self._invoices.get(invoice_id)
            if invoice is None:
                raise NotFound("invoice", invoice_id)
            if invoice.status == InvoiceStatus.PAID.value:
                logger.info("Invoice %s already paid; ignoring redelivery", invoice_id)
                return None
            if invoice.status == InvoiceStatus.VOID.value:
                raise ConflictState(
                    f"Invoice {invoice_id} is void",
                    context={"invoice_id": invoice_id, "status": invoice.status},
                )
            if invoice.cycle_id is not None and invoice.group_id is not None:
                group = await self._groups.get(invoice.group_id, for_update=True)
                if group is not None and group.status != GroupStatus.ACTIVE.value:
                    raise ConflictState(
                        f"Invoice {invoice_id} bills group {group.group_id}, which is {group.status}",
                        context={"invoice_id": invoice_id, "group_id": group.group_id, "status": group.status},
                    )
            generation = await self._settle(invoice, reference)
        logger.info("Invoice %s paid (reference=%s)", invoice_id, reference)
        return generation

    async def mark_invoice_failed(self, actor: Actor, invoice_id: str) -> InvoiceTable:
        authorize(actor, Capability.PROCESS_PAYMENTS)
        async with unit_of_work(self._session):
            invoice = await self._invoices.get(invoice_id)
            if invoice is None:
                raise NotFound("invoice", invoice_id)
            if invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value):
                raise ConflictState(
                    f"Invoice {invoice_id} is already {invoice.status}",
                    context={"status": invoice.status},
                )
            invoice.status = InvoiceStatus.FAILED.value
            invoice.failed_at = self._clock.now()
        logger.warning("Payment failed for invoice %s", invoice_id)
        return invoice

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew_group(self, actor: Actor, group_id: str) -> ProvisionResult:
        """Provision the cycle starting at the group's renewal date.

        Idempotent per (group, cycle_start).  A renewal date whose cycle has
        already ended (a group resumed long after its last cycle) moves
        forward to the cycle containing today.
        """
        authorize(actor, Capability.PROVISION_SUBSCRIPTIONS)
        async with unit_of_work(self._session):
            group = await self._groups.get(group_id, for_update=True)
            if group is None:
                raise NotFound("subscription_group", group_id)
            if group.status != GroupStatus.ACTIVE.value:
                raise ConflictState(
                    f"Only active groups renew; group {group_id} is {group.status}",
                    context={"status": group.status},
                )
            plan = await self._plans.get(group.plan_id)
            if plan is None:
                raise NotFound("plan", group.plan_id)

            today = self._clock.today(self._settings.tz)
            cycle = compute_cycle(plan.period_type, group.renewal_date)
            service_start = cycle.cycle_start
            if cycle.cycle_end < today:
                cycle = compute_cycle(plan.period_type, today)
                service_start = today
            if group.resume_at is not None and cycle.contains(group.resume_at):
                service_start = max(service_start, group.resume_at)
                group.resume_at = None
            result = await self._provision_cycle(group, plan, cycle, service_start=service_start)
        return result

    async def renew_due_groups(self, actor: Actor = SYSTEM_ACTOR, lead_days: int | None = None) -> RenewalReport:
        """Renew every active group whose renewal date is within *lead_days*."""
        authorize(actor, Capability.PROVISION_SUBSCRIPTIONS)
        lead = self._settings.renewal_lead_days if lead_days is None else lead_days
        horizon = self._clock.today(self._settings.tz) + timedelta(days=lead)
        group_ids = [g.group_id for g in await self._groups.list_due_for_renewal(horizon)]

        report = RenewalReport(examined=len(group_ids))
        for group_id in group_ids:
            try:
                result = await self.renew_group(actor, group_id)
            except Exception:
                report.failed += 1
                report.failed_group_ids.append(group_id)
                logger.error("Renewal failed for group %s", group_id, exc_info=True)
                continue
            if result.created:
                report.provisioned += 1
            else:
                report.already_provisioned += 1
        logger.info(
            "Renewal sweep (horizon %s): examined=%d provisioned=%d failed=%d",
            horizon.isoformat(),
            report.examined,
            report.provisioned,
            report.failed,
        )
        return report

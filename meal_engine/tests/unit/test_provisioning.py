"""Tests for group provisioning, invoicing, payment and renewal."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from meal_engine.errors import ConflictState, InvalidWindow, NotFound, Unauthorized
from meal_engine.fulfillment.holidays import VendorHolidayApplicator
from meal_engine.identity import SYSTEM_ACTOR, Actor, Role
from meal_engine.ledger.credits import CreditLedger
from meal_engine.state.repository import CreditRepository, InvoiceRepository, OrderRepository
from meal_engine.subscriptions.provisioning import ZERO_TOTAL_REFERENCE, SubscriptionProvisioner

# ---------------------------------------------------------------------------
# Group creation
# ---------------------------------------------------------------------------


class TestCreateGroup:
    @pytest.mark.asyncio
    async def test_first_cycle_invoice(self, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 4), pay=False)

        assert result.created is True
        assert result.cycle_start == date(2024, 3, 4)
        assert result.cycle_end == date(2024, 3, 10)
        assert result.service_start == date(2024, 3, 4)
        assert result.invoice_status == "pending"
        assert result.total_amount == Decimal("500.00")
        assert len(result.lines) == 1
        assert result.lines[0].slot == "lunch"
        assert result.lines[0].scheduled_meals == 5
        assert result.lines[0].unit_price == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_midweek_start_bills_remaining_days(self, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 6), pay=False)

        assert result.cycle_start == date(2024, 3, 4)
        assert result.service_start == date(2024, 3, 6)
        assert result.lines[0].scheduled_meals == 3
        assert result.total_amount == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_multiple_slots_one_line_each(self, make_group) -> None:
        result = await make_group(
            start_date=date(2024, 3, 4),
            slots={"lunch": [1, 3, 5], "dinner": [0, 6]},
            pay=False,
        )
        by_slot = {line.slot: line for line in result.lines}
        assert by_slot["lunch"].scheduled_meals == 3
        assert by_slot["dinner"].scheduled_meals == 2
        assert result.total_amount == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_past_start_rejected(self, make_group) -> None:
        with pytest.raises(InvalidWindow) as exc_info:
            await make_group(start_date=date(2024, 3, 3))
        assert exc_info.value.context["earliest_date"] == "2024-03-04"

    @pytest.mark.asyncio
    async def test_empty_weekdays_rejected(self, make_group) -> None:
        with pytest.raises(InvalidWindow):
            await make_group(start_date=date(2024, 3, 4), slots={"lunch": []})

    @pytest.mark.asyncio
    async def test_invalid_weekday_rejected(self, make_group) -> None:
        with pytest.raises(InvalidWindow):
            await make_group(start_date=date(2024, 3, 4), slots={"lunch": [7]})

    @pytest.mark.asyncio
    async def test_vendor_without_slot(self, make_group) -> None:
        with pytest.raises(NotFound):
            await make_group(start_date=date(2024, 3, 4), vendor_id="v-unknown")

    @pytest.mark.asyncio
    async def test_consumer_cannot_provision(self, async_session, clock, settings, plan) -> None:
        provisioner = SubscriptionProvisioner(async_session, clock, settings)
        with pytest.raises(Unauthorized):
            await provisioner.create_group(
                Actor("c-1", Role.CONSUMER),
                consumer_id="c-1",
                vendor_id="v-1",
                plan_id=plan.plan_id,
                start_date=date(2024, 3, 4),
                slots={"lunch": [1]},
            )

    @pytest.mark.asyncio
    async def test_declared_holiday_reduces_invoice(self, async_session, clock, settings, vendor, make_group) -> None:
        await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(vendor, "v-1", date(2024, 3, 7))

        result = await make_group(start_date=date(2024, 3, 4))

        assert result.lines[0].scheduled_meals == 4
        orders = await OrderRepository(async_session).list_for_group(result.group_id)
        assert date(2024, 3, 7) not in {o.service_date for o in orders}
        assert len(orders) == 4


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


class TestInvoicePayment:
    @pytest.mark.asyncio
    async def test_payment_generates_orders(self, async_session, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 4))

        orders = await OrderRepository(async_session).list_for_group(result.group_id)
        assert [o.service_date for o in orders] == [
            date(2024, 3, 4),
            date(2024, 3, 5),
            date(2024, 3, 6),
            date(2024, 3, 7),
            date(2024, 3, 8),
        ]
        assert {o.status for o in orders} == {"scheduled"}
        invoice = await InvoiceRepository(async_session).get(result.invoice_id)
        assert invoice is not None
        assert invoice.status == "paid"
        assert invoice.payment_reference == "pay-test"

    @pytest.mark.asyncio
    async def test_redelivered_payment_is_noop(self, async_session, clock, settings, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 4))
        provisioner = SubscriptionProvisioner(async_session, clock, settings)

        assert await provisioner.mark_invoice_paid(SYSTEM_ACTOR, result.invoice_id, reference="again") is None
        invoice = await InvoiceRepository(async_session).get(result.invoice_id)
        assert invoice is not None
        assert invoice.payment_reference == "pay-test"

    @pytest.mark.asyncio
    async def test_failed_payment(self, async_session, clock, settings, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 4), pay=False)
        provisioner = SubscriptionProvisioner(async_session, clock, settings)

        invoice = await provisioner.mark_invoice_failed(SYSTEM_ACTOR, result.invoice_id)

        assert invoice.status == "failed"
        assert invoice.failed_at == clock.now()
        assert await OrderRepository(async_session).list_for_group(result.group_id) == []

    @pytest.mark.asyncio
    async def test_paid_invoice_cannot_fail(self, async_session, clock, settings, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 4))
        provisioner = SubscriptionProvisioner(async_session, clock, settings)

        with pytest.raises(ConflictState):
            await provisioner.mark_invoice_failed(SYSTEM_ACTOR, result.invoice_id)

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, async_session, clock, settings, plan) -> None:
        provisioner = SubscriptionProvisioner(async_session, clock, settings)
        with pytest.raises(NotFound):
            await provisioner.mark_invoice_paid(SYSTEM_ACTOR, "missing")


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


class TestRenewal:
    @pytest.mark.asyncio
    async def test_sweep_provisions_next_cycle_once(self, async_session, clock, settings, make_group) -> None:
        first = await make_group(start_date=date(2024, 3, 4))
        clock.set(datetime(2024, 3, 9, 6, 0, tzinfo=UTC))
        provisioner = SubscriptionProvisioner(async_session, clock, settings)

        report = await provisioner.renew_due_groups()

        assert report.examined == 1
        assert report.provisioned == 1
        view = await provisioner.get_group(SYSTEM_ACTOR, first.group_id)
        assert view.group.renewal_date == date(2024, 3, 18)

        again = await provisioner.renew_due_groups()
        assert again.examined == 0

    @pytest.mark.asyncio
    async def test_renewal_consumes_credits(self, async_session, clock, settings, make_group) -> None:
        first = await make_group(start_date=date(2024, 3, 4))
        sub_id = first.lines[0].subscription_id
        await CreditLedger(async_session, clock, settings).grant_adjustment(SYSTEM_ACTOR, sub_id, 2)
        await async_session.commit()

        renewed = await SubscriptionProvisioner(async_session, clock, settings).renew_group(
            SYSTEM_ACTOR, first.group_id
        )

        assert renewed.cycle_start == date(2024, 3, 11)
        assert renewed.lines[0].scheduled_meals == 5
        assert renewed.credits_applied == 2
        assert renewed.total_amount == Decimal("300.00")
        credits = await CreditRepository(async_session).list_for_consumer("c-1")
        assert [c.status for c in credits] == ["used"]
        applications = await CreditRepository(async_session).list_applications(renewed.invoice_id)
        assert sum(a.quantity for a in applications) == 2

    @pytest.mark.asyncio
    async def test_zero_total_renewal_settles_immediately(self, async_session, clock, settings, make_group) -> None:
        first = await make_group(start_date=date(2024, 3, 4))
        sub_id = first.lines[0].subscription_id
        await CreditLedger(async_session, clock, settings).grant_adjustment(SYSTEM_ACTOR, sub_id, 5)
        await async_session.commit()

        renewed = await SubscriptionProvisioner(async_session, clock, settings).renew_group(
            SYSTEM_ACTOR, first.group_id
        )

        assert renewed.total_amount == Decimal("0.00")
        assert renewed.invoice_status == "paid"
        invoice = await InvoiceRepository(async_session).get(renewed.invoice_id)
        assert invoice is not None
        assert invoice.payment_reference == ZERO_TOTAL_REFERENCE
        orders = await OrderRepository(async_session).list_for_group(first.group_id, start=date(2024, 3, 11))
        assert len(orders) == 5

    @pytest.mark.asyncio
    async def test_other_consumer_cannot_view_group(self, async_session, clock, settings, make_group) -> None:
        first = await make_group(start_date=date(2024, 3, 4))
        provisioner = SubscriptionProvisioner(async_session, clock, settings)

        with pytest.raises(Unauthorized):
            await provisioner.get_group(Actor("c-2", Role.CONSUMER), first.group_id)

        view = await provisioner.get_group(Actor("c-1", Role.CONSUMER), first.group_id)
        assert view.current_cycle is not None
        assert view.current_cycle.cycle_start == date(2024, 3, 4)
        assert [s.slot for s in view.subscriptions] == ["lunch"]

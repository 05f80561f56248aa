"""Tests for vendor holidays and the vendor_skip credits they grant."""

from __future__ import annotations

from datetime import date

import pytest

from meal_engine.errors import InvalidWindow, Unauthorized
from meal_engine.fulfillment.holidays import VendorHolidayApplicator
from meal_engine.identity import Actor, Role
from meal_engine.ledger.credits import CreditLedger
from meal_engine.state.repository import CreditRepository, OrderRepository
from meal_engine.subscriptions.skips import SkipEngine

HOLIDAY = date(2024, 3, 7)


class TestApplyHoliday:
    @pytest.mark.asyncio
    async def test_skips_every_order_and_credits_once(
        self, async_session, clock, settings, vendor, make_group
    ) -> None:
        groups = [await make_group(start_date=date(2024, 3, 4), consumer_id=f"c-{i}") for i in range(1, 6)]
        applicator = VendorHolidayApplicator(async_session, clock, settings)

        result = await applicator.apply_holiday(vendor, "v-1", HOLIDAY, reason="Kitchen maintenance")

        assert result.orders_affected == 5
        assert result.credits_created == 5
        orders = OrderRepository(async_session)
        for group in groups:
            order = await orders.get_by_key(group.lines[0].subscription_id, HOLIDAY, "lunch")
            assert order is not None
            assert order.status == "skipped_by_vendor"
        credits = await CreditRepository(async_session).list_for_consumer("c-3")
        assert [(c.reason, c.note) for c in credits] == [("vendor_skip", "Kitchen maintenance")]

    @pytest.mark.asyncio
    async def test_vendor_credits_do_not_count_as_skips(
        self, async_session, clock, settings, vendor, consumer, make_group
    ) -> None:
        group = await make_group(start_date=date(2024, 3, 4))
        await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(vendor, "v-1", HOLIDAY)

        allowance = await SkipEngine(async_session, clock, settings).allowance(
            consumer, group.lines[0].subscription_id
        )

        assert allowance.skips_used == 0
        assert allowance.remaining_credited_skips == 1

    @pytest.mark.asyncio
    async def test_reapplying_never_double_credits(self, async_session, clock, settings, vendor, make_group) -> None:
        await make_group(start_date=date(2024, 3, 4))
        applicator = VendorHolidayApplicator(async_session, clock, settings)
        first = await applicator.apply_holiday(vendor, "v-1", HOLIDAY)

        again = await applicator.reapply(vendor, first.holiday_id)
        assert again.orders_affected == 0
        assert again.credits_created == 0

        declared_twice = await applicator.apply_holiday(vendor, "v-1", HOLIDAY)
        assert declared_twice.holiday_id == first.holiday_id
        assert declared_twice.orders_affected == 0
        assert len(await CreditRepository(async_session).list_for_consumer("c-1")) == 1

    @pytest.mark.asyncio
    async def test_slot_specific_holiday(self, async_session, clock, settings, vendor, make_group) -> None:
        group = await make_group(
            start_date=date(2024, 3, 4),
            slots={"lunch": [1, 2, 3, 4, 5], "dinner": [1, 2, 3, 4, 5]},
        )

        result = await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(
            vendor, "v-1", HOLIDAY, slot="dinner"
        )

        assert result.orders_affected == 1
        orders = await OrderRepository(async_session).list_for_group(group.group_id, start=HOLIDAY, end=HOLIDAY)
        assert {o.slot: o.status for o in orders} == {"dinner": "skipped_by_vendor", "lunch": "scheduled"}


class TestHolidayAtomicity:
    @pytest.mark.asyncio
    async def test_failed_credit_rolls_back_every_order(
        self, async_session, clock, settings, vendor, make_group, fail_on_call
    ) -> None:
        groups = [await make_group(start_date=date(2024, 3, 4), consumer_id=f"c-{i}") for i in range(1, 4)]
        fail_on_call(CreditLedger, "grant", 2, RuntimeError("ledger write failed"))
        applicator = VendorHolidayApplicator(async_session, clock, settings)

        with pytest.raises(RuntimeError):
            await applicator.apply_holiday(vendor, "v-1", HOLIDAY)

        orders = OrderRepository(async_session)
        for group in groups:
            order = await orders.get_by_key(group.lines[0].subscription_id, HOLIDAY, "lunch")
            assert order is not None
            assert order.status == "scheduled"
        for consumer_id in ("c-1", "c-2", "c-3"):
            assert await CreditRepository(async_session).list_for_consumer(consumer_id) == []

        # The declaration itself is kept, so the vendor can re-apply it.
        [holiday] = await applicator.list_holidays(vendor, "v-1")
        reapplied = await applicator.reapply(vendor, holiday.holiday_id)
        assert reapplied.orders_affected == 3


class TestHolidayValidation:
    @pytest.mark.asyncio
    async def test_past_date_rejected(self, async_session, clock, settings, vendor, plan) -> None:
        with pytest.raises(InvalidWindow) as exc_info:
            await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(
                vendor, "v-1", date(2024, 3, 3)
            )
        assert exc_info.value.context["earliest_date"] == "2024-03-04"

    @pytest.mark.asyncio
    async def test_unknown_slot_rejected(self, async_session, clock, settings, vendor, plan) -> None:
        with pytest.raises(InvalidWindow):
            await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(
                vendor, "v-1", HOLIDAY, slot="brunch"
            )

    @pytest.mark.asyncio
    async def test_other_vendor_rejected(self, async_session, clock, settings, plan) -> None:
        with pytest.raises(Unauthorized):
            await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(
                Actor("v-2", Role.VENDOR), "v-1", HOLIDAY
            )

    @pytest.mark.asyncio
    async def test_consumer_rejected(self, async_session, clock, settings, consumer, plan) -> None:
        with pytest.raises(Unauthorized):
            await VendorHolidayApplicator(async_session, clock, settings).apply_holiday(consumer, "v-1", HOLIDAY)


class TestHolidayListing:
    @pytest.mark.asyncio
    async def test_delete_keeps_skipped_orders(self, async_session, clock, settings, vendor, make_group) -> None:
        group = await make_group(start_date=date(2024, 3, 4))
        applicator = VendorHolidayApplicator(async_session, clock, settings)
        result = await applicator.apply_holiday(vendor, "v-1", HOLIDAY)

        listed = await applicator.list_holidays(vendor, "v-1")
        assert [h.holiday_id for h in listed] == [result.holiday_id]

        assert await applicator.delete_holiday(vendor, result.holiday_id) is True
        assert await applicator.list_holidays(vendor, "v-1") == []
        order = await OrderRepository(async_session).get_by_key(group.lines[0].subscription_id, HOLIDAY, "lunch")
        assert order is not None
        assert order.status == "skipped_by_vendor"

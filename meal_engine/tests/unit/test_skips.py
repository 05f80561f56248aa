"""Tests for customer skips: limits, credits and the skip cutoff."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from decimal import Decimal

import pytest

from meal_engine.errors import ConflictState, CutoffPassed, InvalidWindow, NotFound, Unauthorized
from meal_engine.identity import Actor, Role
from meal_engine.models.enums import RefundPreference
from meal_engine.state.repository import (
    CreditRepository,
    OrderRepository,
    SubscriptionRepository,
    VendorSlotRepository,
)
from meal_engine.subscriptions.lifecycle import SubscriptionLifecycle
from meal_engine.subscriptions.skips import SkipEngine


async def _lunch_from_wednesday(make_group) -> str:
    result = await make_group(start_date=date(2024, 3, 6))
    return result.lines[0].subscription_id


class TestSkipLimits:
    @pytest.mark.asyncio
    async def test_first_skip_credited_second_not(
        self, async_session, clock, settings, consumer, make_group
    ) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        engine = SkipEngine(async_session, clock, settings)

        first = await engine.skip(consumer, sub_id, date(2024, 3, 7))
        assert first.credited is True
        assert first.credit_id is not None
        assert first.skip_limit == 1
        assert first.skips_used == 1
        assert first.remaining_credited_skips == 0
        assert first.cutoff_at == datetime(2024, 3, 7, 9, 0, tzinfo=UTC)

        second = await engine.skip(consumer, sub_id, date(2024, 3, 8))
        assert second.credited is False
        assert second.credit_id is None
        assert second.skips_used == 2

        credits = await CreditRepository(async_session).list_for_consumer("c-1")
        assert [(c.reason, c.source_order_id) for c in credits] == [("skip", first.order_id)]
        orders = await OrderRepository(async_session).list_for_subscription(sub_id)
        assert [o.status for o in orders] == ["scheduled", "skipped_by_customer", "skipped_by_customer"]

    @pytest.mark.asyncio
    async def test_zero_limit_slot_never_credits(self, async_session, clock, settings, consumer, make_group) -> None:
        result = await make_group(start_date=date(2024, 3, 6), slots={"breakfast": [1, 2, 3, 4, 5]})
        engine = SkipEngine(async_session, clock, settings)

        skip = await engine.skip(consumer, result.lines[0].subscription_id, date(2024, 3, 7))

        assert skip.credited is False
        assert skip.remaining_credited_skips == 0

    @pytest.mark.asyncio
    async def test_allowance_reflects_recorded_skips(
        self, async_session, clock, settings, consumer, make_group
    ) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        engine = SkipEngine(async_session, clock, settings)

        before = await engine.allowance(consumer, sub_id)
        assert (before.cycle_start, before.cycle_end) == (date(2024, 3, 4), date(2024, 3, 10))
        assert before.remaining_credited_skips == 1

        await engine.skip(consumer, sub_id, date(2024, 3, 7))

        after = await engine.allowance(consumer, sub_id)
        assert after.skips_used == 1
        assert after.remaining_credited_skips == 0


class TestSkipCutoff:
    @pytest.mark.asyncio
    async def test_skip_at_cutoff_rejected(self, async_session, clock, settings, consumer, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        clock.set(datetime(2024, 3, 6, 9, 0, tzinfo=UTC))

        with pytest.raises(CutoffPassed) as exc_info:
            await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 6))

        assert exc_info.value.context["cutoff_at"] == "2024-03-06T09:00:00+00:00"
        order = await OrderRepository(async_session).get_by_key(sub_id, date(2024, 3, 6), "lunch")
        assert order is not None
        assert order.status == "scheduled"

    @pytest.mark.asyncio
    async def test_skip_just_before_cutoff(self, async_session, clock, settings, consumer, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        clock.set(datetime(2024, 3, 6, 8, 59, 59, tzinfo=UTC))

        result = await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 6))

        assert result.credited is True

    @pytest.mark.asyncio
    async def test_cutoff_in_platform_timezone(self, async_session, clock, settings) -> None:
        await VendorSlotRepository(async_session).create(
            vendor_id="v-2", slot="lunch", delivery_window_start=time(12), base_price=Decimal("100.00")
        )
        kolkata = settings.model_copy(update={"timezone": "Asia/Kolkata"})

        cutoff = await SkipEngine(async_session, clock, kolkata).cutoff_for("v-2", date(2024, 3, 6), "lunch")

        # 12:00 IST is 06:30 UTC; three hours earlier.
        assert cutoff == datetime(2024, 3, 6, 3, 30, tzinfo=UTC)


class TestSkipRejections:
    @pytest.mark.asyncio
    async def test_already_skipped(self, async_session, clock, settings, consumer, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        engine = SkipEngine(async_session, clock, settings)
        await engine.skip(consumer, sub_id, date(2024, 3, 7))

        with pytest.raises(ConflictState):
            await engine.skip(consumer, sub_id, date(2024, 3, 7))

    @pytest.mark.asyncio
    async def test_no_order_on_date(self, async_session, clock, settings, consumer, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        with pytest.raises(NotFound):
            await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 9))

    @pytest.mark.asyncio
    async def test_slot_mismatch(self, async_session, clock, settings, consumer, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        with pytest.raises(InvalidWindow):
            await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 7), slot="dinner")

    @pytest.mark.asyncio
    async def test_other_consumer_rejected(self, async_session, clock, settings, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        with pytest.raises(Unauthorized):
            await SkipEngine(async_session, clock, settings).skip(
                Actor("c-2", Role.CONSUMER), sub_id, date(2024, 3, 7)
            )

    @pytest.mark.asyncio
    async def test_vendor_cannot_skip(self, async_session, clock, settings, vendor, make_group) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        with pytest.raises(Unauthorized):
            await SkipEngine(async_session, clock, settings).skip(vendor, sub_id, date(2024, 3, 7))


class TestSkipAfterPause:
    @pytest.mark.asyncio
    async def test_meal_before_pause_date_can_be_skipped(
        self, async_session, clock, settings, consumer, make_group
    ) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        group_id = (await SubscriptionRepository(async_session).get(sub_id)).group_id
        await SubscriptionLifecycle(async_session, clock, settings).pause(consumer, group_id, date(2024, 3, 8))
        engine = SkipEngine(async_session, clock, settings)

        result = await engine.skip(consumer, sub_id, date(2024, 3, 7))

        assert result.credited is True
        order = await OrderRepository(async_session).get(result.order_id)
        assert order is not None
        assert order.status == "skipped_by_customer"

    @pytest.mark.asyncio
    async def test_meal_from_pause_date_is_already_cancelled(
        self, async_session, clock, settings, consumer, make_group
    ) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        group_id = (await SubscriptionRepository(async_session).get(sub_id)).group_id
        await SubscriptionLifecycle(async_session, clock, settings).pause(consumer, group_id, date(2024, 3, 8))

        with pytest.raises(ConflictState) as exc_info:
            await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 8))

        assert exc_info.value.context["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_subscription_rejected(
        self, async_session, clock, settings, consumer, make_group
    ) -> None:
        sub_id = await _lunch_from_wednesday(make_group)
        group_id = (await SubscriptionRepository(async_session).get(sub_id)).group_id
        await SubscriptionLifecycle(async_session, clock, settings).cancel(
            consumer, group_id, date(2024, 3, 8), RefundPreference.CREDIT
        )

        with pytest.raises(ConflictState) as exc_info:
            await SkipEngine(async_session, clock, settings).skip(consumer, sub_id, date(2024, 3, 7))

        assert exc_info.value.context["status"] == "cancelled"

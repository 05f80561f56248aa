"""Tests for the credit ledger: grant, consume, expire, void and global credits."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from meal_engine.errors import ConflictState, Unauthorized
from meal_engine.identity import SYSTEM_ACTOR, Actor, Role
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import CreditReason, CreditStatus, GlobalCreditSource, GlobalCreditStatus
from meal_engine.state.repository import CreditRepository, SubscriptionRepository

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _subscription(async_session, make_group):
    result = await make_group(start_date=date(2024, 3, 4), pay=False)
    sub = await SubscriptionRepository(async_session).get(result.lines[0].subscription_id)
    assert sub is not None
    return sub


# ---------------------------------------------------------------------------
# Subscription credits
# ---------------------------------------------------------------------------


class TestConsume:
    @pytest.mark.asyncio
    async def test_oldest_expiring_first(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        now = clock.now()
        late = await ledger.grant(sub, CreditReason.SKIP, expires_at=now + timedelta(days=20))
        soon = await ledger.grant(sub, CreditReason.VENDOR_SKIP, quantity=2, expires_at=now + timedelta(days=5))
        middle = await ledger.grant(sub, CreditReason.SKIP, expires_at=now + timedelta(days=10))

        consumed = await ledger.consume(sub.subscription_id, "lunch", 3, invoice_id="inv-1")

        assert consumed == 3
        assert soon.status == CreditStatus.USED.value
        assert soon.consumed_quantity == 2
        assert soon.used_invoice_id == "inv-1"
        assert middle.status == CreditStatus.USED.value
        assert late.status == CreditStatus.AVAILABLE.value
        applications = await CreditRepository(async_session).list_applications("inv-1")
        assert sorted(a.quantity for a in applications) == [1, 2]

    @pytest.mark.asyncio
    async def test_partial_consumption_keeps_credit_available(
        self, async_session, clock, settings, make_group
    ) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant(sub, CreditReason.ADMIN_ADJUSTMENT, quantity=3)

        assert await ledger.consume(sub.subscription_id, "lunch", 2) == 2

        assert credit.status == CreditStatus.AVAILABLE.value
        assert credit.consumed_quantity == 2
        assert await ledger.available_quantity(sub.subscription_id, "lunch") == 1

    @pytest.mark.asyncio
    async def test_never_consumes_more_than_available(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        await ledger.grant(sub, CreditReason.SKIP)

        assert await ledger.consume(sub.subscription_id, "lunch", 5) == 1
        assert await ledger.consume(sub.subscription_id, "lunch", 5) == 0

    @pytest.mark.asyncio
    async def test_other_slot_untouched(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        await ledger.grant(sub, CreditReason.SKIP)

        assert await ledger.consume(sub.subscription_id, "dinner", 1) == 0

    @pytest.mark.asyncio
    async def test_non_positive_grant_rejected(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        with pytest.raises(ValueError):
            await CreditLedger(async_session, clock, settings).grant(sub, CreditReason.SKIP, quantity=0)


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_used_credit_cannot_be_voided(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant(sub, CreditReason.SKIP)
        await ledger.consume(sub.subscription_id, "lunch", 1)

        with pytest.raises(ConflictState) as exc_info:
            await ledger.void(SYSTEM_ACTOR, credit.credit_id)
        assert exc_info.value.context["status"] == "used"

    @pytest.mark.asyncio
    async def test_void_requires_adjust_capability(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant(sub, CreditReason.SKIP)

        with pytest.raises(Unauthorized):
            await ledger.void(Actor("c-1", Role.CONSUMER), credit.credit_id)

    @pytest.mark.asyncio
    async def test_expire_is_forward_only(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant(sub, CreditReason.SKIP, expires_at=clock.now() + timedelta(days=1))
        kept = await ledger.grant(sub, CreditReason.SKIP)

        clock.advance(days=1)
        assert await ledger.expire() == {"credits": 1, "global_credits": 0}
        assert credit.status == CreditStatus.EXPIRED.value
        assert kept.status == CreditStatus.AVAILABLE.value

        # Expired credits are never consumed, and a second sweep finds nothing.
        assert await ledger.consume(sub.subscription_id, "lunch", 2) == 1
        assert await ledger.expire() == {"credits": 0, "global_credits": 0}

    @pytest.mark.asyncio
    async def test_default_expiry(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        credit = await CreditLedger(async_session, clock, settings).grant(sub, CreditReason.SKIP)
        assert credit.expires_at == clock.now() + timedelta(days=settings.credit_expiry_days)

    @pytest.mark.asyncio
    async def test_consumer_lists_only_own_credits(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        await ledger.grant(sub, CreditReason.SKIP)

        credits = await ledger.list_for_consumer(Actor("c-1", Role.CONSUMER), "c-1")
        assert len(credits) == 1
        with pytest.raises(Unauthorized):
            await ledger.list_for_consumer(Actor("c-2", Role.CONSUMER), "c-1")


# ---------------------------------------------------------------------------
# Global credits
# ---------------------------------------------------------------------------


class TestGlobalCredits:
    @pytest.mark.asyncio
    async def test_available_global_credit_expires(self, async_session, clock, settings, plan) -> None:
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant_global(
            consumer_id="c-1",
            amount=Decimal("250"),
            source_type=GlobalCreditSource.CANCEL_CREDIT,
        )
        assert credit.amount == Decimal("250.00")
        assert credit.expires_at == clock.now() + timedelta(days=settings.global_credit_expiry_days)

        clock.advance(days=settings.global_credit_expiry_days)
        assert await ledger.expire() == {"credits": 0, "global_credits": 1}
        assert credit.status == GlobalCreditStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_refund_settlement_is_idempotent(self, async_session, clock, settings, plan) -> None:
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant_global(
            consumer_id="c-1",
            amount=Decimal("400.00"),
            source_type=GlobalCreditSource.CANCEL_REFUND,
            status=GlobalCreditStatus.PENDING_REFUND,
            refund_destination="upi:c1@bank",
        )
        assert credit.expires_at is None
        pending = await ledger.list_pending_refunds(SYSTEM_ACTOR)
        assert [c.global_credit_id for c in pending] == [credit.global_credit_id]

        settled = await ledger.settle_refund(SYSTEM_ACTOR, credit.global_credit_id, "rf-1")
        assert settled.status == GlobalCreditStatus.REFUNDED.value
        assert settled.refund_reference == "rf-1"

        again = await ledger.settle_refund(SYSTEM_ACTOR, credit.global_credit_id, "rf-2")
        assert again.refund_reference == "rf-1"
        assert await ledger.list_pending_refunds(SYSTEM_ACTOR) == []

    @pytest.mark.asyncio
    async def test_available_credit_cannot_be_refunded(self, async_session, clock, settings, plan) -> None:
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant_global(
            consumer_id="c-1",
            amount=Decimal("10.00"),
            source_type=GlobalCreditSource.ADMIN_ADJUSTMENT,
        )
        with pytest.raises(ConflictState):
            await ledger.settle_refund(SYSTEM_ACTOR, credit.global_credit_id, "rf-1")

    @pytest.mark.asyncio
    async def test_convert_with_nothing_to_convert(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)

        global_credit, voided = await ledger.convert_to_global(
            [sub],
            {sub.subscription_id: Decimal("100.00")},
            consumer_id="c-1",
            source_type=GlobalCreditSource.CANCEL_CREDIT,
            group_id=sub.group_id,
        )

        assert global_credit is None
        assert voided == 0

    @pytest.mark.asyncio
    async def test_convert_voids_and_values_credits(self, async_session, clock, settings, make_group) -> None:
        sub = await _subscription(async_session, make_group)
        ledger = CreditLedger(async_session, clock, settings)
        credit = await ledger.grant(sub, CreditReason.SKIP, quantity=2)

        global_credit, voided = await ledger.convert_to_global(
            [sub],
            {sub.subscription_id: Decimal("100.00")},
            consumer_id="c-1",
            source_type=GlobalCreditSource.CANCEL_CREDIT,
            group_id=sub.group_id,
            extra_amount=Decimal("50.00"),
        )

        assert voided == 1
        assert credit.status == CreditStatus.VOID.value
        assert global_credit is not None
        assert global_credit.amount == Decimal("250.00")
        assert global_credit.source_group_id == sub.group_id

"""Credit ledger: grant, consume, expire and void meal credits.

Subscription credits are scoped to one (subscription, slot) and count meals;
global credits are vendor-agnostic money balances created when a group is
cancelled or auto-cancelled.  Status only ever moves forward
(``available -> used | expired | void`` for credits;
``pending_refund -> refunded`` and ``available -> used | expired`` for global
credits).  An illegal transition raises :class:`~meal_engine.errors.ConflictState`.

Consumption order is oldest-expiring-first, ties broken by creation time, so
the credit closest to lapsing is always spent first.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.clock import Clock
from meal_engine.config import EngineSettings
from meal_engine.errors import ConflictState, NotFound
from meal_engine.identity import Actor, Capability, authorize, ensure_owner
from meal_engine.models.enums import (
    CREDIT_TRANSITIONS,
    GLOBAL_CREDIT_TRANSITIONS,
    CreditReason,
    CreditStatus,
    GlobalCreditSource,
    GlobalCreditStatus,
)
from meal_engine.pricing import ZERO, to_money
from meal_engine.state.repository import CreditRepository, GlobalCreditRepository, SubscriptionRepository
from meal_engine.state.tables import CreditTable, GlobalCreditTable, SubscriptionTable

logger = logging.getLogger(__name__)


def _transition_credit(credit: CreditTable, target: CreditStatus) -> None:
    current = CreditStatus(credit.status)
    if target not in CREDIT_TRANSITIONS[current]:
        raise ConflictState(
            f"Credit {credit.credit_id} cannot move from '{current.value}' to '{target.value}'",
            context={"credit_id": credit.credit_id, "status": current.value, "requested": target.value},
        )
    credit.status = target.value


def _transition_global(credit: GlobalCreditTable, target: GlobalCreditStatus) -> None:
    current = GlobalCreditStatus(credit.status)
    if target not in GLOBAL_CREDIT_TRANSITIONS[current]:
        raise ConflictState(
            f"Global credit {credit.global_credit_id} cannot move from '{current.value}' to '{target.value}'",
            context={
                "global_credit_id": credit.global_credit_id,
                "status": current.value,
                "requested": target.value,
            },
        )
    credit.status = target.value


def remaining_quantity(credit: CreditTable) -> int:
    return credit.quantity - credit.consumed_quantity


class CreditLedger:
    """Subscription and global credit operations.

    Parameters
    ----------
    session:
        Session whose transaction all writes join.  Callers wrap multi-row
        operations in :func:`~meal_engine.state.database.unit_of_work`.
    clock:
        Time source for grants, consumption and expiry.
    settings:
        Provides the default credit expiry periods.
    """

    def __init__(self, session: AsyncSession, clock: Clock, settings: EngineSettings) -> None:
        self._session = session
        self._clock = clock
        self._settings = settings
        self._credits = CreditRepository(session)
        self._globals = GlobalCreditRepository(session)
        self._subs = SubscriptionRepository(session)

    # ------------------------------------------------------------------
    # Subscription credits
    # ------------------------------------------------------------------

    def default_expiry(self, now: datetime | None = None) -> datetime:
        return (now or self._clock.now()) + timedelta(days=self._settings.credit_expiry_days)

    async def grant(
        self,
        subscription: SubscriptionTable,
        reason: CreditReason,
        *,
        quantity: int = 1,
        expires_at: datetime | None = None,
        source_order_id: str | None = None,
        note: str | None = None,
    ) -> CreditTable:
        """Grant *quantity* meal credits on *subscription*'s slot."""
        if quantity <= 0:
            raise ValueError(f"Credit quantity must be positive, got {quantity}")
        now = self._clock.now()
        credit = await self._credits.create(
            subscription_id=subscription.subscription_id,
            consumer_id=subscription.consumer_id,
            vendor_id=subscription.vendor_id,
            slot=subscription.slot,
            reason=reason.value,
            quantity=quantity,
            expires_at=expires_at or self.default_expiry(now),
            created_at=now,
            source_order_id=source_order_id,
            note=note,
        )
        logger.debug(
            "Granted %d %s credit(s) on subscription %s (%s)",
            quantity,
            reason.value,
            subscription.subscription_id,
            subscription.slot,
        )
        return credit

    async def grant_adjustment(
        self,
        actor: Actor,
        subscription_id: str,
        quantity: int,
        note: str | None = None,
        expires_at: datetime | None = None,
    ) -> CreditTable:
        """Administrative credit grant."""
        authorize(actor, Capability.ADJUST_CREDITS)
        subscription = await self._subs.get(subscription_id)
        if subscription is None:
            raise NotFound("subscription", subscription_id)
        credit = await self.grant(
            subscription,
            CreditReason.ADMIN_ADJUSTMENT,
            quantity=quantity,
            expires_at=expires_at,
            note=note,
        )
        logger.info(
            "Admin %s granted %d credit(s) on subscription %s",
            actor.subject,
            quantity,
            subscription_id,
        )
        return credit

    async def available_quantity(self, subscription_id: str, slot: str) -> int:
        credits = await self._credits.list_available([subscription_id], self._clock.now(), slot=slot)
        return sum(remaining_quantity(c) for c in credits)

    async def consume(
        self,
        subscription_id: str,
        slot: str,
        quantity: int,
        invoice_id: str | None = None,
    ) -> int:
        """Consume up to *quantity* credits, oldest-expiring-first.

        Parameters
        ----------
        subscription_id:
            Subscription whose credits are spent.
        slot:
            Slot the credits are scoped to.
        quantity:
            Maximum number of meal credits to consume.
        invoice_id:
            Invoice the consumption is applied to, recorded on each
            :class:`CreditApplicationTable` row.

        Returns
        -------
        int
            The quantity actually consumed; never more than was available.
        """
        if quantity <= 0:
            return 0
        now = self._clock.now()
        credits = await self._credits.list_available([subscription_id], now, slot=slot)

        consumed = 0
        for credit in credits:
            if consumed >= quantity:
                break
            take = min(remaining_quantity(credit), quantity - consumed)
            if take <= 0:
                continue
            credit.consumed_quantity += take
            consumed += take
            if remaining_quantity(credit) == 0:
                _transition_credit(credit, CreditStatus.USED)
                credit.used_at = now
                credit.used_invoice_id = invoice_id
            await self._credits.add_application(
                credit_id=credit.credit_id,
                invoice_id=invoice_id,
                quantity=take,
                applied_at=now,
            )

        await self._session.flush()
        if consumed:
            logger.info(
                "Consumed %d of %d requested credit(s) on subscription %s (%s)",
                consumed,
                quantity,
                subscription_id,
                slot,
            )
        return consumed

    async def void(self, actor: Actor, credit_id: str, note: str | None = None) -> CreditTable:
        """Administratively void an available credit."""
        authorize(actor, Capability.ADJUST_CREDITS)
        credit = await self._credits.get(credit_id)
        if credit is None:
            raise NotFound("credit", credit_id)
        _transition_credit(credit, CreditStatus.VOID)
        if note:
            credit.note = note
        await self._session.flush()
        logger.info("Credit %s voided by %s", credit_id, actor.subject)
        return credit

    async def void_credits(self, credits: Iterable[CreditTable], note: str | None = None) -> int:
        """Void each of *credits* as part of a larger transition."""
        count = 0
        for credit in credits:
            _transition_credit(credit, CreditStatus.VOID)
            if note:
                credit.note = note
            count += 1
        await self._session.flush()
        return count

    async def expire(self) -> dict[str, int]:
        """Expire lapsed ``available`` subscription and global credits.

        Returns
        -------
        dict[str, int]
            ``{"credits": n, "global_credits": m}``.
        """
        now = self._clock.now()
        lapsed = await self._credits.list_lapsed(now)
        for credit in lapsed:
            _transition_credit(credit, CreditStatus.EXPIRED)
        lapsed_global = await self._globals.list_lapsed(now)
        for gc in lapsed_global:
            _transition_global(gc, GlobalCreditStatus.EXPIRED)
        await self._session.flush()
        logger.info("Expired %d credit(s) and %d global credit(s)", len(lapsed), len(lapsed_global))
        return {"credits": len(lapsed), "global_credits": len(lapsed_global)}

    async def list_for_consumer(
        self,
        actor: Actor,
        consumer_id: str,
        *,
        subscription_id: str | None = None,
        status: CreditStatus | None = None,
    ) -> list[CreditTable]:
        authorize(actor, Capability.READ_SUBSCRIPTIONS)
        ensure_owner(actor, consumer_id, "credits")
        return await self._credits.list_for_consumer(
            consumer_id,
            subscription_id=subscription_id,
            status=status.value if status else None,
        )

    # ------------------------------------------------------------------
    # Global credits
    # ------------------------------------------------------------------

    async def grant_global(
        self,
        *,
        consumer_id: str,
        amount: Decimal,
        source_type: GlobalCreditSource,
        status: GlobalCreditStatus = GlobalCreditStatus.AVAILABLE,
        group_id: str | None = None,
        refund_destination: str | None = None,
        note: str | None = None,
    ) -> GlobalCreditTable:
        now = self._clock.now()
        expires_at = None
        if status == GlobalCreditStatus.AVAILABLE:
            expires_at = now + timedelta(days=self._settings.global_credit_expiry_days)
        credit = await self._globals.create(
            consumer_id=consumer_id,
            amount=to_money(amount),
            source_type=source_type.value,
            status=status.value,
            created_at=now,
            expires_at=expires_at,
            source_group_id=group_id,
            refund_destination=refund_destination,
            currency=self._settings.currency,
            note=note,
        )
        logger.info(
            "Global credit %s created for consumer %s: %s %s (%s, %s)",
            credit.global_credit_id,
            consumer_id,
            credit.amount,
            credit.currency,
            source_type.value,
            status.value,
        )
        return credit

    async def available_value(
        self,
        subscriptions: Iterable[SubscriptionTable],
        prices: Mapping[str, Decimal],
    ) -> tuple[list[CreditTable], Decimal]:
        """Available credits of *subscriptions* and their value at *prices* (keyed by subscription id)."""
        subs = list(subscriptions)
        credits = await self._credits.list_available([s.subscription_id for s in subs], self._clock.now())
        value = ZERO
        for credit in credits:
            value += remaining_quantity(credit) * prices.get(credit.subscription_id, ZERO)
        return credits, to_money(value)

    async def applied_value(self, invoice_ids: Iterable[str]) -> Decimal:
        """Value of the credits consumed against *invoice_ids* at each line's unit price.

        Those credits are ``used``; when the invoices are voided this value is
        what the customer is still owed for them.
        """
        rows = await self._credits.list_applied_at_line_price(list(invoice_ids))
        return to_money(sum((quantity * price for quantity, price in rows), ZERO))

    async def convert_to_global(
        self,
        subscriptions: Iterable[SubscriptionTable],
        prices: Mapping[str, Decimal],
        *,
        consumer_id: str,
        source_type: GlobalCreditSource,
        group_id: str,
        status: GlobalCreditStatus = GlobalCreditStatus.AVAILABLE,
        extra_amount: Decimal = ZERO,
        refund_destination: str | None = None,
    ) -> tuple[GlobalCreditTable | None, int]:
        """Void available subscription credits and fold their value into one global credit.

        ``extra_amount`` (the value of cancelled future meals on cancellation)
        is added to the credits' value.  No global credit is created when the
        total is zero.

        Returns
        -------
        tuple
            The global credit (or ``None``) and the number of credits voided.
        """
        credits, value = await self.available_value(subscriptions, prices)
        voided = await self.void_credits(credits, note=f"converted to global credit ({source_type.value})")
        total = to_money(value + extra_amount)
        if total <= ZERO:
            return None, voided
        global_credit = await self.grant_global(
            consumer_id=consumer_id,
            amount=total,
            source_type=source_type,
            status=status,
            group_id=group_id,
            refund_destination=refund_destination,
        )
        return global_credit, voided

    async def list_global(self, actor: Actor, consumer_id: str) -> list[GlobalCreditTable]:
        authorize(actor, Capability.READ_SUBSCRIPTIONS)
        ensure_owner(actor, consumer_id, "global credits")
        return await self._globals.list_for_consumer(consumer_id)

    async def list_pending_refunds(self, actor: Actor, limit: int = 100) -> list[GlobalCreditTable]:
        authorize(actor, Capability.PROCESS_REFUNDS)
        return await self._globals.list_pending_refunds(limit)

    async def settle_refund(self, actor: Actor, global_credit_id: str, reference: str) -> GlobalCreditTable:
        """Mark a pending refund as paid out by the gateway.

        Settling an already ``refunded`` credit is a no-op so gateway
        redeliveries are harmless.
        """
        authorize(actor, Capability.PROCESS_REFUNDS)
        credit = await self._globals.get(global_credit_id)
        if credit is None:
            raise NotFound("global_credit", global_credit_id)
        if credit.status == GlobalCreditStatus.REFUNDED.value:
            logger.info("Refund %s already settled; ignoring redelivery", global_credit_id)
            return credit
        _transition_global(credit, GlobalCreditStatus.REFUNDED)
        credit.refund_reference = reference
        credit.settled_at = self._clock.now()
        await self._session.flush()
        logger.info("Refund %s settled (reference=%s)", global_credit_id, reference)
        return credit

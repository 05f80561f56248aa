"""Repository classes providing data access to the subscription engine state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (through :func:`~meal_engine.state.database.unit_of_work` or the
``get_session`` context manager).
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.models.enums import (
    CAPACITY_STATUSES,
    CreditStatus,
    GlobalCreditStatus,
    GroupStatus,
    InvoiceStatus,
    MaintenanceRunStatus,
    OrderStatus,
    TrialStatus,
)
from meal_engine.state.database import dialect_name
from meal_engine.state.tables import (
    CreditApplicationTable,
    CreditTable,
    CycleTable,
    GlobalCreditTable,
    InvoiceLineTable,
    InvoiceTable,
    MaintenanceRunTable,
    OrderTable,
    PlanTable,
    SkipTable,
    SubscriptionGroupTable,
    SubscriptionTable,
    TrialMealTable,
    TrialTable,
    TrialTypeTable,
    VendorHolidayTable,
    VendorSlotTable,
    VendorTrialTypeTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
    constraint: str | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection (mutually exclusive with *constraint*).
    constraint:
        Named constraint for conflict detection (mutually exclusive with *index_elements*).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    conflict_kwargs: dict[str, Any] = {}
    if constraint is not None:
        conflict_kwargs["constraint"] = constraint
    elif index_elements is not None:
        conflict_kwargs["index_elements"] = index_elements

    stmt: Any
    if dialect_name(session) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_nothing(**conflict_kwargs)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Plans and vendor slots
# ---------------------------------------------------------------------------


class PlanRepository:
    """Access to the ``plans`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        name: str,
        period_type: str,
        allowed_slots: list[str],
        skip_limits: dict[str, int],
        plan_id: str | None = None,
    ) -> PlanTable:
        row = PlanTable(
            name=name,
            period_type=period_type,
            allowed_slots=list(allowed_slots),
            skip_limits=dict(skip_limits),
        )
        if plan_id is not None:
            row.plan_id = plan_id
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, plan_id: str) -> PlanTable | None:
        result = await self._session.execute(select(PlanTable).where(PlanTable.plan_id == plan_id))
        return result.scalar_one_or_none()


class VendorSlotRepository:
    """Access to per-vendor slot configuration."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        vendor_id: str,
        slot: str,
        delivery_window_start: time,
        base_price: Decimal,
        max_meals_per_day: int = 0,
        delivery_window_end: time | None = None,
        is_enabled: bool = True,
    ) -> VendorSlotTable:
        row = VendorSlotTable(
            vendor_id=vendor_id,
            slot=slot,
            delivery_window_start=delivery_window_start,
            delivery_window_end=delivery_window_end,
            base_price=base_price,
            max_meals_per_day=max_meals_per_day,
            is_enabled=is_enabled,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, vendor_id: str, slot: str, *, enabled_only: bool = True) -> VendorSlotTable | None:
        stmt = select(VendorSlotTable).where(
            VendorSlotTable.vendor_id == vendor_id,
            VendorSlotTable.slot == slot,
        )
        if enabled_only:
            stmt = stmt.where(VendorSlotTable.is_enabled.is_(True))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_vendor(self, vendor_id: str) -> list[VendorSlotTable]:
        result = await self._session.execute(
            select(VendorSlotTable).where(VendorSlotTable.vendor_id == vendor_id).order_by(VendorSlotTable.slot)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Groups and subscriptions
# ---------------------------------------------------------------------------


class SubscriptionGroupRepository:
    """Access to ``subscription_groups``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        consumer_id: str,
        vendor_id: str,
        plan_id: str,
        start_date: date,
        renewal_date: date,
        delivery_address_id: str | None = None,
    ) -> SubscriptionGroupTable:
        row = SubscriptionGroupTable(
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            plan_id=plan_id,
            start_date=start_date,
            renewal_date=renewal_date,
            delivery_address_id=delivery_address_id,
            status=GroupStatus.ACTIVE.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, group_id: str, *, for_update: bool = False) -> SubscriptionGroupTable | None:
        """Fetch a group; ``for_update`` takes a row lock on PostgreSQL (no-op on SQLite)."""
        stmt = select(SubscriptionGroupTable).where(SubscriptionGroupTable.group_id == group_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_consumer(self, consumer_id: str) -> list[SubscriptionGroupTable]:
        result = await self._session.execute(
            select(SubscriptionGroupTable)
            .where(SubscriptionGroupTable.consumer_id == consumer_id)
            .order_by(SubscriptionGroupTable.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_paused_since_before(self, cutoff: datetime) -> list[SubscriptionGroupTable]:
        """Paused groups whose ``paused_at`` is at or before *cutoff*."""
        result = await self._session.execute(
            select(SubscriptionGroupTable)
            .where(
                SubscriptionGroupTable.status == GroupStatus.PAUSED.value,
                SubscriptionGroupTable.paused_at.is_not(None),
                SubscriptionGroupTable.paused_at <= cutoff,
            )
            .order_by(SubscriptionGroupTable.paused_at)
        )
        return list(result.scalars().all())

    async def list_due_for_renewal(self, on_or_before: date) -> list[SubscriptionGroupTable]:
        result = await self._session.execute(
            select(SubscriptionGroupTable)
            .where(
                SubscriptionGroupTable.status == GroupStatus.ACTIVE.value,
                SubscriptionGroupTable.renewal_date <= on_or_before,
            )
            .order_by(SubscriptionGroupTable.renewal_date)
        )
        return list(result.scalars().all())


class SubscriptionRepository:
    """Access to slot-level ``subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        group_id: str,
        consumer_id: str,
        vendor_id: str,
        slot: str,
        weekday_mask: int,
    ) -> SubscriptionTable:
        row = SubscriptionTable(
            group_id=group_id,
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            slot=slot,
            weekday_mask=weekday_mask,
            status=GroupStatus.ACTIVE.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, subscription_id: str) -> SubscriptionTable | None:
        result = await self._session.execute(
            select(SubscriptionTable).where(SubscriptionTable.subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def list_for_group(self, group_id: str, *, status: str | None = None) -> list[SubscriptionTable]:
        stmt = select(SubscriptionTable).where(SubscriptionTable.group_id == group_id)
        if status is not None:
            stmt = stmt.where(SubscriptionTable.status == status)
        result = await self._session.execute(stmt.order_by(SubscriptionTable.slot))
        return list(result.scalars().all())

    async def set_status_for_group(self, group_id: str, status: str) -> int:
        rows = await self.list_for_group(group_id)
        for row in rows:
            row.status = status
        await self._session.flush()
        return len(rows)


# ---------------------------------------------------------------------------
# Cycles and invoices
# ---------------------------------------------------------------------------


class CycleRepository:
    """Access to billing ``cycles``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        group_id: str,
        period_type: str,
        cycle_start: date,
        cycle_end: date,
        renewal_date: date,
        service_start: date,
        is_first_cycle: bool,
    ) -> CycleTable:
        row = CycleTable(
            group_id=group_id,
            period_type=period_type,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            renewal_date=renewal_date,
            service_start=service_start,
            is_first_cycle=is_first_cycle,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, cycle_id: str) -> CycleTable | None:
        result = await self._session.execute(select(CycleTable).where(CycleTable.cycle_id == cycle_id))
        return result.scalar_one_or_none()

    async def get_by_start(self, group_id: str, cycle_start: date) -> CycleTable | None:
        result = await self._session.execute(
            select(CycleTable).where(
                CycleTable.group_id == group_id,
                CycleTable.cycle_start == cycle_start,
            )
        )
        return result.scalar_one_or_none()

    async def get_containing(self, group_id: str, day: date) -> CycleTable | None:
        result = await self._session.execute(
            select(CycleTable).where(
                CycleTable.group_id == group_id,
                CycleTable.cycle_start <= day,
                CycleTable.cycle_end >= day,
            )
        )
        return result.scalar_one_or_none()

    async def list_paid_open(self, today: date) -> list[CycleTable]:
        """Cycles of active groups with a paid invoice that have not ended before *today*."""
        stmt = (
            select(CycleTable)
            .join(InvoiceTable, InvoiceTable.cycle_id == CycleTable.cycle_id)
            .join(SubscriptionGroupTable, SubscriptionGroupTable.group_id == CycleTable.group_id)
            .where(
                InvoiceTable.status == InvoiceStatus.PAID.value,
                SubscriptionGroupTable.status == GroupStatus.ACTIVE.value,
                CycleTable.cycle_end >= today,
            )
            .order_by(CycleTable.cycle_start)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class InvoiceRepository:
    """Access to ``invoices`` and ``invoice_lines``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        consumer_id: str,
        vendor_id: str,
        cycle_id: str | None = None,
        trial_id: str | None = None,
        group_id: str | None = None,
        subtotal: Decimal = Decimal("0"),
        credits_amount: Decimal = Decimal("0"),
        total_amount: Decimal = Decimal("0"),
        currency: str = "INR",
    ) -> InvoiceTable:
        row = InvoiceTable(
            cycle_id=cycle_id,
            trial_id=trial_id,
            group_id=group_id,
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            subtotal=subtotal,
            credits_amount=credits_amount,
            total_amount=total_amount,
            currency=currency,
            status=InvoiceStatus.PENDING.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def add_line(
        self,
        *,
        invoice_id: str,
        subscription_id: str,
        slot: str,
        scheduled_meals: int,
        credits_applied: int,
        unit_price: Decimal,
        line_total: Decimal,
    ) -> InvoiceLineTable:
        row = InvoiceLineTable(
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            slot=slot,
            scheduled_meals=scheduled_meals,
            credits_applied=credits_applied,
            billable_meals=scheduled_meals - credits_applied,
            unit_price=unit_price,
            line_total=line_total,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        result = await self._session.execute(select(InvoiceTable).where(InvoiceTable.invoice_id == invoice_id))
        return result.scalar_one_or_none()

    async def get_for_cycle(self, cycle_id: str) -> InvoiceTable | None:
        result = await self._session.execute(select(InvoiceTable).where(InvoiceTable.cycle_id == cycle_id))
        return result.scalar_one_or_none()

    async def list_lines(self, invoice_id: str) -> list[InvoiceLineTable]:
        result = await self._session.execute(
            select(InvoiceLineTable).where(InvoiceLineTable.invoice_id == invoice_id).order_by(InvoiceLineTable.slot)
        )
        return list(result.scalars().all())

    async def latest_paid_unit_prices(self, subscription_ids: Collection[str]) -> dict[str, Decimal]:
        """Return the unit price on each subscription's most recent paid invoice line."""
        if not subscription_ids:
            return {}
        stmt = (
            select(InvoiceLineTable.subscription_id, InvoiceLineTable.unit_price)
            .join(InvoiceTable, InvoiceTable.invoice_id == InvoiceLineTable.invoice_id)
            .where(
                InvoiceLineTable.subscription_id.in_(list(subscription_ids)),
                InvoiceTable.status == InvoiceStatus.PAID.value,
            )
            .order_by(InvoiceTable.paid_at.desc(), InvoiceTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        prices: dict[str, Decimal] = {}
        for subscription_id, price in result.all():
            prices.setdefault(subscription_id, Decimal(price))
        return prices

    async def list_unpaid_for_group(self, group_id: str, ending_on_or_after: date) -> list[InvoiceTable]:
        """Pending or failed cycle invoices of *group_id* whose cycle ends on or after the given date."""
        stmt = (
            select(InvoiceTable)
            .join(CycleTable, CycleTable.cycle_id == InvoiceTable.cycle_id)
            .where(
                InvoiceTable.group_id == group_id,
                InvoiceTable.status.in_([InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value]),
                CycleTable.cycle_end >= ending_on_or_after,
            )
            .order_by(CycleTable.cycle_start)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderRepository:
    """Access to delivery ``orders``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, subscription_id: str, service_date: date, slot: str) -> bool:
        result = await self._session.execute(
            select(OrderTable.order_id).where(
                OrderTable.subscription_id == subscription_id,
                OrderTable.service_date == service_date,
                OrderTable.slot == slot,
            )
        )
        return result.first() is not None

    async def insert_if_absent(
        self,
        *,
        order_id: str,
        subscription_id: str,
        group_id: str,
        consumer_id: str,
        vendor_id: str,
        service_date: date,
        slot: str,
        delivery_address_id: str | None,
        now: datetime,
    ) -> bool:
        """Insert a ``scheduled`` order unless one exists for the same key.

        Returns ``True`` when a row was inserted.  A concurrent insert of the
        same (subscription, date, slot) resolves to a no-op via the unique
        constraint rather than an error.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            OrderTable,
            values={
                "order_id": order_id,
                "subscription_id": subscription_id,
                "group_id": group_id,
                "consumer_id": consumer_id,
                "vendor_id": vendor_id,
                "service_date": service_date,
                "slot": slot,
                "status": OrderStatus.SCHEDULED.value,
                "delivery_address_id": delivery_address_id,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["subscription_id", "service_date", "slot"],
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, order_id: str) -> OrderTable | None:
        result = await self._session.execute(select(OrderTable).where(OrderTable.order_id == order_id))
        return result.scalar_one_or_none()

    async def get_by_key(self, subscription_id: str, service_date: date, slot: str) -> OrderTable | None:
        result = await self._session.execute(
            select(OrderTable).where(
                OrderTable.subscription_id == subscription_id,
                OrderTable.service_date == service_date,
                OrderTable.slot == slot,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_group(
        self,
        group_id: str,
        *,
        status: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[OrderTable]:
        stmt = select(OrderTable).where(OrderTable.group_id == group_id)
        if status is not None:
            stmt = stmt.where(OrderTable.status == status)
        if start is not None:
            stmt = stmt.where(OrderTable.service_date >= start)
        if end is not None:
            stmt = stmt.where(OrderTable.service_date <= end)
        result = await self._session.execute(stmt.order_by(OrderTable.service_date, OrderTable.slot))
        return list(result.scalars().all())

    async def list_for_subscription(self, subscription_id: str) -> list[OrderTable]:
        result = await self._session.execute(
            select(OrderTable)
            .where(OrderTable.subscription_id == subscription_id)
            .order_by(OrderTable.service_date)
        )
        return list(result.scalars().all())

    async def list_scheduled_for_vendor(
        self,
        vendor_id: str,
        service_date: date,
        slot: str | None = None,
    ) -> list[OrderTable]:
        """Scheduled orders of a vendor on a date, optionally limited to one slot."""
        stmt = select(OrderTable).where(
            OrderTable.vendor_id == vendor_id,
            OrderTable.service_date == service_date,
            OrderTable.status == OrderStatus.SCHEDULED.value,
        )
        if slot is not None:
            stmt = stmt.where(OrderTable.slot == slot)
        result = await self._session.execute(stmt.order_by(OrderTable.slot, OrderTable.subscription_id))
        return list(result.scalars().all())

    async def count_capacity_usage(
        self,
        vendor_id: str,
        slot: str,
        days: Sequence[date],
    ) -> dict[date, int]:
        """Count capacity-occupying orders per date in a single grouped query."""
        if not days:
            return {}
        stmt = (
            select(OrderTable.service_date, func.count())
            .where(
                OrderTable.vendor_id == vendor_id,
                OrderTable.slot == slot,
                OrderTable.service_date.in_(list(days)),
                OrderTable.status.in_([s.value for s in CAPACITY_STATUSES]),
            )
            .group_by(OrderTable.service_date)
        )
        result = await self._session.execute(stmt)
        return {row[0]: int(row[1]) for row in result.all()}


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditRepository:
    """Access to subscription ``credits`` and their applications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        subscription_id: str,
        consumer_id: str,
        vendor_id: str,
        slot: str,
        reason: str,
        quantity: int,
        expires_at: datetime,
        created_at: datetime,
        source_order_id: str | None = None,
        note: str | None = None,
    ) -> CreditTable:
        row = CreditTable(
            subscription_id=subscription_id,
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            slot=slot,
            reason=reason,
            quantity=quantity,
            consumed_quantity=0,
            status=CreditStatus.AVAILABLE.value,
            expires_at=expires_at,
            created_at=created_at,
            source_order_id=source_order_id,
            note=note,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, credit_id: str) -> CreditTable | None:
        result = await self._session.execute(select(CreditTable).where(CreditTable.credit_id == credit_id))
        return result.scalar_one_or_none()

    async def list_available(
        self,
        subscription_ids: Collection[str],
        now: datetime,
        *,
        slot: str | None = None,
    ) -> list[CreditTable]:
        """Unexpired ``available`` credits ordered oldest-expiring-first."""
        if not subscription_ids:
            return []
        stmt = select(CreditTable).where(
            CreditTable.subscription_id.in_(list(subscription_ids)),
            CreditTable.status == CreditStatus.AVAILABLE.value,
            CreditTable.expires_at > now,
        )
        if slot is not None:
            stmt = stmt.where(CreditTable.slot == slot)
        stmt = stmt.order_by(CreditTable.expires_at, CreditTable.created_at, CreditTable.credit_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_lapsed(self, now: datetime) -> list[CreditTable]:
        """``available`` credits whose expiry instant has passed."""
        result = await self._session.execute(
            select(CreditTable).where(
                CreditTable.status == CreditStatus.AVAILABLE.value,
                CreditTable.expires_at <= now,
            )
        )
        return list(result.scalars().all())

    async def list_by_source_orders(self, order_ids: Collection[str], reason: str) -> list[CreditTable]:
        if not order_ids:
            return []
        result = await self._session.execute(
            select(CreditTable).where(
                CreditTable.source_order_id.in_(list(order_ids)),
                CreditTable.reason == reason,
            )
        )
        return list(result.scalars().all())

    async def list_for_consumer(
        self,
        consumer_id: str,
        *,
        subscription_id: str | None = None,
        status: str | None = None,
    ) -> list[CreditTable]:
        stmt = select(CreditTable).where(CreditTable.consumer_id == consumer_id)
        if subscription_id is not None:
            stmt = stmt.where(CreditTable.subscription_id == subscription_id)
        if status is not None:
            stmt = stmt.where(CreditTable.status == status)
        result = await self._session.execute(stmt.order_by(CreditTable.created_at.desc()))
        return list(result.scalars().all())

    async def add_application(
        self,
        *,
        credit_id: str,
        invoice_id: str | None,
        quantity: int,
        applied_at: datetime,
    ) -> None:
        self._session.add(
            CreditApplicationTable(
                credit_id=credit_id,
                invoice_id=invoice_id,
                quantity=quantity,
                applied_at=applied_at,
            )
        )
        await self._session.flush()

    async def list_applications(self, invoice_id: str) -> list[CreditApplicationTable]:
        result = await self._session.execute(
            select(CreditApplicationTable).where(CreditApplicationTable.invoice_id == invoice_id)
        )
        return list(result.scalars().all())

    async def list_applied_at_line_price(self, invoice_ids: Collection[str]) -> list[tuple[int, Decimal]]:
        """(quantity, unit price) of every credit application on *invoice_ids*.

        The price is the one on the invoice line of the credit's subscription,
        i.e. what each applied meal would otherwise have been billed at.
        """
        if not invoice_ids:
            return []
        stmt = (
            select(CreditApplicationTable.quantity, InvoiceLineTable.unit_price)
            .join(CreditTable, CreditTable.credit_id == CreditApplicationTable.credit_id)
            .join(
                InvoiceLineTable,
                (InvoiceLineTable.invoice_id == CreditApplicationTable.invoice_id)
                & (InvoiceLineTable.subscription_id == CreditTable.subscription_id),
            )
            .where(CreditApplicationTable.invoice_id.in_(list(invoice_ids)))
        )
        result = await self._session.execute(stmt)
        return [(int(quantity), Decimal(price)) for quantity, price in result.all()]


class GlobalCreditRepository:
    """Access to vendor-agnostic ``global_credits``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        consumer_id: str,
        amount: Decimal,
        source_type: str,
        status: str,
        created_at: datetime,
        expires_at: datetime | None = None,
        source_group_id: str | None = None,
        refund_destination: str | None = None,
        currency: str = "INR",
        note: str | None = None,
    ) -> GlobalCreditTable:
        row = GlobalCreditTable(
            consumer_id=consumer_id,
            amount=amount,
            source_type=source_type,
            status=status,
            created_at=created_at,
            expires_at=expires_at,
            source_group_id=source_group_id,
            refund_destination=refund_destination,
            currency=currency,
            note=note,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, global_credit_id: str) -> GlobalCreditTable | None:
        result = await self._session.execute(
            select(GlobalCreditTable).where(GlobalCreditTable.global_credit_id == global_credit_id)
        )
        return result.scalar_one_or_none()

    async def list_for_consumer(self, consumer_id: str) -> list[GlobalCreditTable]:
        result = await self._session.execute(
            select(GlobalCreditTable)
            .where(GlobalCreditTable.consumer_id == consumer_id)
            .order_by(GlobalCreditTable.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_group(self, group_id: str) -> list[GlobalCreditTable]:
        result = await self._session.execute(
            select(GlobalCreditTable).where(GlobalCreditTable.source_group_id == group_id)
        )
        return list(result.scalars().all())

    async def list_pending_refunds(self, limit: int = 100) -> list[GlobalCreditTable]:
        result = await self._session.execute(
            select(GlobalCreditTable)
            .where(GlobalCreditTable.status == GlobalCreditStatus.PENDING_REFUND.value)
            .order_by(GlobalCreditTable.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_lapsed(self, now: datetime) -> list[GlobalCreditTable]:
        result = await self._session.execute(
            select(GlobalCreditTable).where(
                GlobalCreditTable.status == GlobalCreditStatus.AVAILABLE.value,
                GlobalCreditTable.expires_at.is_not(None),
                GlobalCreditTable.expires_at <= now,
            )
        )
        return list(result.scalars().all())


class SkipRepository:
    """Access to the customer ``skips`` log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        subscription_id: str,
        order_id: str,
        slot: str,
        service_date: date,
        cycle_start: date,
        credited: bool,
        credit_id: str | None,
        created_at: datetime,
    ) -> SkipTable:
        row = SkipTable(
            subscription_id=subscription_id,
            order_id=order_id,
            slot=slot,
            service_date=service_date,
            cycle_start=cycle_start,
            credited=credited,
            credit_id=credit_id,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def count_in_cycle(self, subscription_id: str, slot: str, cycle_start: date) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(SkipTable)
            .where(
                SkipTable.subscription_id == subscription_id,
                SkipTable.slot == slot,
                SkipTable.cycle_start == cycle_start,
            )
        )
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Vendor holidays
# ---------------------------------------------------------------------------


class VendorHolidayRepository:
    """Access to ``vendor_holidays``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        vendor_id: str,
        holiday_date: date,
        slot: str | None,
        reason: str | None,
        created_at: datetime,
    ) -> VendorHolidayTable:
        row = VendorHolidayTable(
            vendor_id=vendor_id,
            holiday_date=holiday_date,
            slot=slot,
            reason=reason,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, holiday_id: str) -> VendorHolidayTable | None:
        result = await self._session.execute(
            select(VendorHolidayTable).where(VendorHolidayTable.holiday_id == holiday_id)
        )
        return result.scalar_one_or_none()

    async def find(self, vendor_id: str, holiday_date: date, slot: str | None) -> VendorHolidayTable | None:
        """Find the holiday with exactly this vendor, date and slot (``None`` = whole day)."""
        stmt = select(VendorHolidayTable).where(
            VendorHolidayTable.vendor_id == vendor_id,
            VendorHolidayTable.holiday_date == holiday_date,
        )
        stmt = stmt.where(VendorHolidayTable.slot.is_(None) if slot is None else VendorHolidayTable.slot == slot)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def list_for_vendor(
        self,
        vendor_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[VendorHolidayTable]:
        stmt = select(VendorHolidayTable).where(VendorHolidayTable.vendor_id == vendor_id)
        if start is not None:
            stmt = stmt.where(VendorHolidayTable.holiday_date >= start)
        if end is not None:
            stmt = stmt.where(VendorHolidayTable.holiday_date <= end)
        result = await self._session.execute(stmt.order_by(VendorHolidayTable.holiday_date))
        return list(result.scalars().all())

    async def delete(self, holiday_id: str) -> bool:
        result = await self._session.execute(
            delete(VendorHolidayTable).where(VendorHolidayTable.holiday_id == holiday_id)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------


class TrialTypeRepository:
    """Access to ``trial_types`` and vendor opt-ins."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        name: str,
        duration_days: int,
        max_meals: int,
        allowed_slots: list[str],
        pricing_mode: str,
        cooldown_days: int,
        discount_pct: Decimal = Decimal("0"),
        fixed_price: Decimal | None = None,
    ) -> TrialTypeTable:
        row = TrialTypeTable(
            name=name,
            duration_days=duration_days,
            max_meals=max_meals,
            allowed_slots=list(allowed_slots),
            pricing_mode=pricing_mode,
            cooldown_days=cooldown_days,
            discount_pct=discount_pct,
            fixed_price=fixed_price,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, trial_type_id: str) -> TrialTypeTable | None:
        result = await self._session.execute(
            select(TrialTypeTable).where(TrialTypeTable.trial_type_id == trial_type_id)
        )
        return result.scalar_one_or_none()

    async def opt_in(self, vendor_id: str, trial_type_id: str) -> None:
        self._session.add(VendorTrialTypeTable(vendor_id=vendor_id, trial_type_id=trial_type_id, active=True))
        await self._session.flush()

    async def is_offered(self, vendor_id: str, trial_type_id: str) -> bool:
        result = await self._session.execute(
            select(VendorTrialTypeTable.vendor_id).where(
                VendorTrialTypeTable.vendor_id == vendor_id,
                VendorTrialTypeTable.trial_type_id == trial_type_id,
                VendorTrialTypeTable.active.is_(True),
            )
        )
        return result.first() is not None


class TrialRepository:
    """Access to ``trials`` and ``trial_meals``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        consumer_id: str,
        vendor_id: str,
        trial_type_id: str,
        start_date: date,
        end_date: date,
        total_price: Decimal,
        delivery_address_id: str | None = None,
        status: str = TrialStatus.SCHEDULED.value,
    ) -> TrialTable:
        row = TrialTable(
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            trial_type_id=trial_type_id,
            start_date=start_date,
            end_date=end_date,
            total_price=total_price,
            delivery_address_id=delivery_address_id,
            status=status,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def add_meal(self, *, trial_id: str, service_date: date, slot: str, price: Decimal) -> TrialMealTable:
        row = TrialMealTable(trial_id=trial_id, service_date=service_date, slot=slot, price=price)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, trial_id: str) -> TrialTable | None:
        result = await self._session.execute(select(TrialTable).where(TrialTable.trial_id == trial_id))
        return result.scalar_one_or_none()

    async def list_meals(self, trial_id: str) -> list[TrialMealTable]:
        result = await self._session.execute(
            select(TrialMealTable)
            .where(TrialMealTable.trial_id == trial_id)
            .order_by(TrialMealTable.service_date, TrialMealTable.slot)
        )
        return list(result.scalars().all())

    async def latest_blocking(self, consumer_id: str, vendor_id: str, trial_type_id: str) -> TrialTable | None:
        """The non-cancelled trial of this (consumer, vendor, type) ending last."""
        result = await self._session.execute(
            select(TrialTable)
            .where(
                TrialTable.consumer_id == consumer_id,
                TrialTable.vendor_id == vendor_id,
                TrialTable.trial_type_id == trial_type_id,
                TrialTable.status.in_(
                    [TrialStatus.SCHEDULED.value, TrialStatus.ACTIVE.value, TrialStatus.COMPLETED.value]
                ),
            )
            .order_by(TrialTable.end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_started(self, today: date) -> list[TrialTable]:
        """Scheduled trials whose window includes *today*."""
        result = await self._session.execute(
            select(TrialTable).where(
                TrialTable.status == TrialStatus.SCHEDULED.value,
                TrialTable.start_date <= today,
                TrialTable.end_date >= today,
            )
        )
        return list(result.scalars().all())

    async def list_ended(self, today: date) -> list[TrialTable]:
        """Scheduled or active trials whose ``end_date`` is before *today*."""
        result = await self._session.execute(
            select(TrialTable).where(
                TrialTable.status.in_([TrialStatus.SCHEDULED.value, TrialStatus.ACTIVE.value]),
                TrialTable.end_date < today,
            )
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Maintenance runs
# ---------------------------------------------------------------------------


class MaintenanceRunRepository:
    """Execution records for maintenance tasks."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def start(self, task_name: str, started_at: datetime) -> MaintenanceRunTable:
        row = MaintenanceRunTable(
            task_name=task_name,
            status=MaintenanceRunStatus.RUNNING.value,
            started_at=started_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def finish(
        self,
        run_id: str,
        *,
        status: MaintenanceRunStatus,
        finished_at: datetime,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        row = await self._session.get(MaintenanceRunTable, run_id)
        if row is None:
            logger.warning("Maintenance run %s vanished before completion was recorded", run_id)
            return
        row.status = status.value
        row.finished_at = finished_at
        row.result_json = result
        row.error_message = error_message
        await self._session.flush()

    async def list_recent(self, limit: int = 20) -> list[MaintenanceRunTable]:
        result = await self._session.execute(
            select(MaintenanceRunTable).order_by(MaintenanceRunTable.started_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

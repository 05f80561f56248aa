"""Shared fixtures for engine tests.

Every test runs against a fresh in-memory SQLite database with the full ORM
schema, a :class:`FixedClock` frozen at Monday 2024-03-04 06:00 UTC and
settings pinned to the UTC timezone, so cutoff arithmetic reads directly
off the dates used in the tests.

Seed data:

* a weekly plan allowing all three slots, with skip limits
  breakfast=0, lunch=1, dinner=2;
* vendor ``v-1`` serving breakfast (08:00, 80.00), lunch (12:00, 100.00)
  and dinner (19:00, 150.00).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, time
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from meal_engine.clock import FixedClock
from meal_engine.config import EngineSettings
from meal_engine.identity import SYSTEM_ACTOR, Actor, Role
from meal_engine.models.results import ProvisionResult
from meal_engine.state.repository import PlanRepository, VendorSlotRepository
from meal_engine.state.tables import Base, PlanTable
from meal_engine.subscriptions.provisioning import SubscriptionProvisioner

VENDOR_ID = "v-1"
CONSUMER_ID = "c-1"
WEEKDAYS = [1, 2, 3, 4, 5]

# Monday.
START_INSTANT = datetime(2024, 3, 4, 6, 0, tzinfo=UTC)


@pytest.fixture()
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None, timezone="UTC")


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(START_INSTANT)


@pytest.fixture()
def consumer() -> Actor:
    return Actor(CONSUMER_ID, Role.CONSUMER)


@pytest.fixture()
def vendor() -> Actor:
    return Actor(VENDOR_ID, Role.VENDOR)


@pytest_asyncio.fixture
async def session_factory():
    """Provide a session factory bound to a fresh in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def plan(async_session: AsyncSession) -> PlanTable:
    """Seed the weekly plan and vendor v-1's slot configuration."""
    row = await PlanRepository(async_session).create(
        name="Weekly",
        period_type="weekly",
        allowed_slots=["breakfast", "lunch", "dinner"],
        skip_limits={"breakfast": 0, "lunch": 1, "dinner": 2},
    )
    slots = VendorSlotRepository(async_session)
    for slot, opens, price in (("breakfast", 8, "80.00"), ("lunch", 12, "100.00"), ("dinner", 19, "150.00")):
        await slots.create(vendor_id=VENDOR_ID, slot=slot, delivery_window_start=time(opens), base_price=Decimal(price))
    await async_session.commit()
    return row


@pytest_asyncio.fixture
async def make_group(
    async_session: AsyncSession,
    clock: FixedClock,
    settings: EngineSettings,
    plan: PlanTable,
):
    """Factory creating a group through the provisioner, paying its first invoice by default."""

    async def _make(
        *,
        start_date: date,
        slots: Mapping[str, Iterable[int]] | None = None,
        consumer_id: str = CONSUMER_ID,
        vendor_id: str = VENDOR_ID,
        pay: bool = True,
    ) -> ProvisionResult:
        provisioner = SubscriptionProvisioner(async_session, clock, settings)
        result = await provisioner.create_group(
            SYSTEM_ACTOR,
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            plan_id=plan.plan_id,
            start_date=start_date,
            slots=slots if slots is not None else {"lunch": WEEKDAYS},
        )
        if pay and result.invoice_status != "paid":
            await provisioner.mark_invoice_paid(SYSTEM_ACTOR, result.invoice_id, reference="pay-test")
        return result

    return _make


@pytest.fixture()
def fail_on_call(monkeypatch: pytest.MonkeyPatch):
    """Patch an async method so that its *n*-th call raises *error*; other calls go through."""

    def _install(owner: type, name: str, n: int, error: BaseException) -> None:
        original = getattr(owner, name)
        calls = 0

        async def _wrapper(self, *args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == n:
                raise error
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(owner, name, _wrapper)

    return _install

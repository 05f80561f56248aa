"""Shared fixtures for API tests.

The application runs against a fresh in-memory SQLite database through
``dependency_overrides``; the clock is frozen at Monday 2024-03-04 06:00 UTC
and engine settings are pinned to UTC.  Requests carry real signed bearer
tokens so the authentication middleware and capability guards are
exercised end to end.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from datetime import UTC, datetime, time
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set the token secret BEFORE importing application modules so the
# AuthenticationMiddleware verifies with a deterministic secret.
_TEST_TOKEN_SECRET = "test-secret-key-for-mealcycle-tests"
os.environ.setdefault("AUTH_TOKEN_SECRET", _TEST_TOKEN_SECRET)

from meal_api.config import APISettings  # noqa: E402
from meal_api.dependencies import (  # noqa: E402
    get_clock,
    get_db_session,
    get_engine_settings,
    get_session_factory,
    get_settings,
)
from meal_api.main import create_app  # noqa: E402
from meal_api.routers.payments import sign_payload  # noqa: E402
from meal_api.security import TokenManager  # noqa: E402
from meal_engine.clock import FixedClock  # noqa: E402
from meal_engine.config import EngineSettings  # noqa: E402
from meal_engine.state.repository import PlanRepository, TrialTypeRepository, VendorSlotRepository  # noqa: E402
from meal_engine.state.tables import Base  # noqa: E402

CRON_SECRET = "cron-secret-for-tests"
PAYMENT_SECRET = "payment-secret-for-tests"
START_INSTANT = datetime(2024, 3, 4, 6, 0, tzinfo=UTC)

_token_manager = TokenManager(SecretStr(os.environ["AUTH_TOKEN_SECRET"]))


def auth_headers(sub: str, role: str) -> dict[str, str]:
    """Authorization header for *sub* acting with *role*."""
    return {"Authorization": f"Bearer {_token_manager.generate_token(sub, role)}"}


_IDENTITIES: dict[str, tuple[str, str]] = {
    "consumer": ("c-1", "consumer"),
    "other_consumer": ("c-2", "consumer"),
    "vendor": ("v-1", "vendor"),
    "other_vendor": ("v-2", "vendor"),
    "service": ("checkout", "service"),
    "admin": ("ops-1", "admin"),
}


@pytest.fixture()
def headers() -> dict[str, dict[str, str]]:
    """Authorization headers keyed by persona (consumer c-1, vendor v-1, ...)."""
    return {name: auth_headers(sub, role) for name, (sub, role) in _IDENTITIES.items()}


@pytest.fixture()
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture()
def make_headers() -> Callable[[str, str], dict[str, str]]:
    return auth_headers


# ---------------------------------------------------------------------------
# Settings, clock, database
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_settings() -> APISettings:
    return APISettings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cron_secret=SecretStr(CRON_SECRET),
        payment_webhook_secret=SecretStr(PAYMENT_SECRET),
    )


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(_env_file=None, timezone="UTC")


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(START_INSTANT)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(session_factory) -> dict[str, str]:
    """Seed a weekly plan, vendor v-1's slots and a half-price trial type.

    Skip limits are breakfast=0, lunch=1, dinner=2; lunch costs 100.00 and
    dinner 150.00.
    """
    async with session_factory() as session:
        plan = await PlanRepository(session).create(
            name="Weekly",
            period_type="weekly",
            allowed_slots=["breakfast", "lunch", "dinner"],
            skip_limits={"breakfast": 0, "lunch": 1, "dinner": 2},
        )
        slots = VendorSlotRepository(session)
        for slot, opens, price in (("breakfast", 8, "80.00"), ("lunch", 12, "100.00"), ("dinner", 19, "150.00")):
            await slots.create(
                vendor_id="v-1", slot=slot, delivery_window_start=time(opens), base_price=Decimal(price)
            )
        types = TrialTypeRepository(session)
        trial_type = await types.create(
            name="Taster week",
            duration_days=7,
            max_meals=3,
            allowed_slots=["lunch", "dinner"],
            pricing_mode="per_meal",
            cooldown_days=30,
            discount_pct=Decimal("50"),
        )
        await types.opt_in("v-1", trial_type.trial_type_id)
        await session.commit()
        return {"plan_id": plan.plan_id, "trial_type_id": trial_type.trial_type_id}


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(api_settings: APISettings, engine_settings: EngineSettings, clock: FixedClock, session_factory):
    """Create the FastAPI app with the test database, settings and clock injected."""
    application = create_app()

    async def _override_session():
        session: AsyncSession = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_settings] = lambda: api_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_clock] = lambda: clock
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app (no default credentials)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def signed_event(payload: dict[str, Any], secret: str = PAYMENT_SECRET) -> tuple[bytes, dict[str, str]]:
    """Serialise a payment event and its signature header."""
    body = json.dumps(payload).encode("utf-8")
    return body, {"X-Payment-Signature": sign_payload(body, secret), "Content-Type": "application/json"}


@pytest.fixture()
def sign_event() -> Callable[..., tuple[bytes, dict[str, str]]]:
    return signed_event


@pytest_asyncio.fixture()
async def paid_group(
    client: AsyncClient,
    seeded: dict[str, str],
    headers: dict[str, dict[str, str]],
) -> dict[str, Any]:
    """A weekday-lunch group for c-1 starting Monday 2024-03-04, first invoice paid."""
    response = await client.post(
        "/api/v1/subscriptions/groups",
        json={
            "consumer_id": "c-1",
            "vendor_id": "v-1",
            "plan_id": seeded["plan_id"],
            "start_date": "2024-03-04",
            "slots": {"lunch": [1, 2, 3, 4, 5]},
        },
        headers=headers["service"],
    )
    assert response.status_code == 201, response.text
    group = response.json()

    body, signature = signed_event({"type": "invoice.paid", "invoice_id": group["invoice_id"], "reference": "pay-1"})
    paid = await client.post("/api/v1/payments/events", content=body, headers=signature)
    assert paid.status_code == 200, paid.text
    return group


@pytest.fixture()
def subscription_id(paid_group: dict[str, Any]) -> str:
    return paid_group["lines"][0]["subscription_id"]



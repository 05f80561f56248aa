"""Tests for capability checks, ownership checks and the error taxonomy."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

import pytest

from meal_engine.clock import Clock, FixedClock, SystemClock, local_instant
from meal_engine.errors import (
    CooldownActive,
    CutoffPassed,
    EngineError,
    NotFound,
    TransientStoreError,
    Unauthorized,
)
from meal_engine.identity import (
    SYSTEM_ACTOR,
    Actor,
    Capability,
    Role,
    authorize,
    ensure_owner,
    parse_role,
)

# ---------------------------------------------------------------------------
# Roles and capabilities
# ---------------------------------------------------------------------------


class TestParseRole:
    def test_case_insensitive(self) -> None:
        assert parse_role(" Consumer ") == Role.CONSUMER

    def test_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("superuser")


class TestAuthorize:
    def test_consumer_may_skip(self) -> None:
        authorize(Actor("c-1", Role.CONSUMER), Capability.SKIP_MEALS)

    def test_consumer_may_not_declare_holidays(self) -> None:
        with pytest.raises(Unauthorized) as exc_info:
            authorize(Actor("c-1", Role.CONSUMER), Capability.MANAGE_HOLIDAYS)
        assert exc_info.value.status_code == 403
        assert exc_info.value.context["capability"] == "manage:holidays"

    def test_vendor_may_not_skip(self) -> None:
        with pytest.raises(Unauthorized):
            authorize(Actor("v-1", Role.VENDOR), Capability.SKIP_MEALS)

    def test_service_runs_maintenance(self) -> None:
        authorize(Actor("cron", Role.SERVICE), Capability.RUN_MAINTENANCE)

    def test_admin_holds_everything(self) -> None:
        for capability in Capability:
            authorize(SYSTEM_ACTOR, capability)


class TestEnsureOwner:
    def test_owner_passes(self) -> None:
        ensure_owner(Actor("c-1", Role.CONSUMER), "c-1", "subscription")

    def test_other_consumer_rejected(self) -> None:
        with pytest.raises(Unauthorized, match="does not belong"):
            ensure_owner(Actor("c-2", Role.CONSUMER), "c-1", "subscription")

    def test_admin_bypasses_ownership(self) -> None:
        ensure_owner(Actor("staff", Role.ADMIN), "c-1", "subscription")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestEngineErrors:
    def test_to_dict_serialises_context(self) -> None:
        cutoff = datetime(2024, 3, 6, 9, 0, tzinfo=UTC)
        err = CutoffPassed("Too late", context={"cutoff_at": cutoff, "remaining": 2})
        assert err.to_dict() == {
            "detail": "Too late",
            "error_code": "CUTOFF_PASSED",
            "context": {"cutoff_at": "2024-03-06T09:00:00+00:00", "remaining": 2},
        }
        assert err.status_code == 422

    def test_not_found_message(self) -> None:
        err = NotFound("order", "o-1")
        assert str(err) == "order 'o-1' not found"
        assert err.status_code == 404
        assert err.context == {"entity": "order", "id": "o-1"}

    def test_cooldown_carries_end_date(self) -> None:
        err = CooldownActive(date(2024, 4, 1))
        assert err.cooldown_ends_at == date(2024, 4, 1)
        assert err.context["cooldown_ends_at"] == "2024-04-01"
        assert "2024-04-01" in err.message

    def test_transient_is_retryable_status(self) -> None:
        assert TransientStoreError("down").status_code == 503

    def test_all_errors_share_base(self) -> None:
        assert issubclass(Unauthorized, EngineError)
        assert issubclass(TransientStoreError, EngineError)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class TestClock:
    def test_base_clock_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            Clock()  # type: ignore[abstract]

    def test_system_clock_is_utc(self) -> None:
        assert SystemClock().now().tzinfo is UTC

    def test_fixed_clock_naive_is_utc(self) -> None:
        clock = FixedClock(datetime(2024, 3, 6, 8, 0))
        assert clock.now() == datetime(2024, 3, 6, 8, 0, tzinfo=UTC)

    def test_advance(self) -> None:
        clock = FixedClock(datetime(2024, 3, 6, 8, 0, tzinfo=UTC))
        assert clock.advance(hours=2) == datetime(2024, 3, 6, 10, 0, tzinfo=UTC)

    def test_today_in_local_timezone(self) -> None:
        # 20:00 UTC is already the next day in Kolkata (+05:30).
        clock = FixedClock(datetime(2024, 3, 6, 20, 0, tzinfo=UTC))
        assert clock.today(ZoneInfo("Asia/Kolkata")) == date(2024, 3, 7)
        assert clock.today(UTC) == date(2024, 3, 6)

    def test_local_instant(self) -> None:
        instant = local_instant(date(2024, 3, 6), time(12, 30), ZoneInfo("Asia/Kolkata"))
        assert instant == datetime(2024, 3, 6, 7, 0, tzinfo=UTC)

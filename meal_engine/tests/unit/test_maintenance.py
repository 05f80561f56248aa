"""Tests for the daily maintenance scheduler and its cron trigger."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from meal_engine.maintenance.scheduler import MaintenanceLoop, MaintenanceScheduler, compute_next_run
from meal_engine.state.repository import MaintenanceRunRepository, SubscriptionGroupRepository
from meal_engine.subscriptions.lifecycle import SubscriptionLifecycle

# ---------------------------------------------------------------------------
# Cron helper
# ---------------------------------------------------------------------------


class TestComputeNextRun:
    def test_hourly(self) -> None:
        now = datetime(2024, 3, 4, 10, 20, tzinfo=UTC)
        assert compute_next_run("15 * * * *", now) == datetime(2024, 3, 4, 11, 15, tzinfo=UTC)

    def test_daily_later_today(self) -> None:
        now = datetime(2024, 3, 4, 1, 0, tzinfo=UTC)
        assert compute_next_run("0 2 * * *", now) == datetime(2024, 3, 4, 2, 0, tzinfo=UTC)

    def test_daily_already_passed(self) -> None:
        now = datetime(2024, 3, 4, 2, 0, tzinfo=UTC)
        assert compute_next_run("0 2 * * *", now) == datetime(2024, 3, 5, 2, 0, tzinfo=UTC)

    def test_weekly_sunday(self) -> None:
        now = datetime(2024, 3, 4, 6, 0, tzinfo=UTC)
        assert compute_next_run("30 3 * * 0", now) == datetime(2024, 3, 10, 3, 30, tzinfo=UTC)

    @pytest.mark.parametrize("expr", ["*/5 * * * *", "0 2 1 * *", "not cron"])
    def test_unsupported(self, expr: str) -> None:
        with pytest.raises(ValueError, match="Unsupported cron expression"):
            compute_next_run(expr, datetime(2024, 3, 4, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class _ExplodingScheduler(MaintenanceScheduler):
    def tasks(self):
        tasks = super().tasks()
        tasks["credit_expiry"] = self._explode
        return tasks

    async def _explode(self, session: AsyncSession) -> dict[str, Any]:
        raise RuntimeError("ledger unavailable")


class TestMaintenanceScheduler:
    @pytest.mark.asyncio
    async def test_runs_every_task(self, session_factory, clock, settings, make_group) -> None:
        await make_group(start_date=date(2024, 3, 4))

        report = await MaintenanceScheduler(session_factory, clock, settings).run_daily()

        assert report.success is True
        assert report.timestamp == clock.now()
        assert list(report.results) == ["order_backfill", "credit_expiry", "trial_completion", "pause_auto_cancel"]
        assert report.summary.total_tasks == 4
        assert report.summary.has_errors is False
        backfill = report.results["order_backfill"].result
        assert backfill is not None
        assert (backfill["cycles"], backfill["existing"]) == (1, 5)
        assert report.results["credit_expiry"].result == {"credits": 0, "global_credits": 0}

        async with session_factory() as session:
            runs = await MaintenanceRunRepository(session).list_recent()
        assert sorted(r.task_name for r in runs) == sorted(report.results)
        assert {r.status for r in runs} == {"completed"}

    @pytest.mark.asyncio
    async def test_subset(self, session_factory, clock, settings, plan) -> None:
        report = await MaintenanceScheduler(session_factory, clock, settings).run_daily(only=["credit_expiry"])

        assert list(report.results) == ["credit_expiry"]
        assert report.summary.total_tasks == 1

    @pytest.mark.asyncio
    async def test_failing_task_is_isolated(self, session_factory, clock, settings, plan) -> None:
        report = await _ExplodingScheduler(session_factory, clock, settings).run_daily()

        assert report.success is False
        assert report.summary.failed == 1
        assert report.summary.successful == 3
        assert report.results["credit_expiry"].error == "ledger unavailable"
        assert report.results["trial_completion"].success is True

        async with session_factory() as session:
            runs = {r.task_name: r for r in await MaintenanceRunRepository(session).list_recent()}
        assert runs["credit_expiry"].status == "failed"
        assert runs["credit_expiry"].error_message == "ledger unavailable"
        assert runs["order_backfill"].status == "completed"

    @pytest.mark.asyncio
    async def test_auto_cancels_stale_pauses(
        self, async_session, session_factory, clock, settings, consumer, make_group
    ) -> None:
        group = await make_group(start_date=date(2024, 3, 4))
        await SubscriptionLifecycle(async_session, clock, settings).pause(consumer, group.group_id, date(2024, 3, 6))
        clock.advance(days=61)

        report = await MaintenanceScheduler(session_factory, clock, settings).run_daily(only=["pause_auto_cancel"])

        outcome = report.results["pause_auto_cancel"].result
        assert outcome is not None
        assert outcome["cancelled_group_ids"] == [group.group_id]
        async with session_factory() as session:
            row = await SubscriptionGroupRepository(session).get(group.group_id)
        assert row is not None
        assert row.status == "cancelled"


# ---------------------------------------------------------------------------
# In-process loop
# ---------------------------------------------------------------------------


class TestMaintenanceLoop:
    @pytest.mark.asyncio
    async def test_rejects_unsupported_cron(self, session_factory, clock, settings) -> None:
        scheduler = MaintenanceScheduler(session_factory, clock, settings)
        with pytest.raises(ValueError):
            MaintenanceLoop(scheduler, "every day", clock, settings)

    @pytest.mark.asyncio
    async def test_next_run_in_platform_timezone(self, session_factory, clock, settings) -> None:
        scheduler = MaintenanceScheduler(session_factory, clock, settings)
        loop = MaintenanceLoop(scheduler, "0 2 * * *", clock, settings)

        assert loop.next_run() == datetime(2024, 3, 5, 2, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, clock, settings) -> None:
        loop = MaintenanceLoop(MaintenanceScheduler(session_factory, clock, settings), "0 2 * * *", clock, settings)

        await loop.start()
        assert loop.running is True

        await loop.stop()
        assert loop.running is False

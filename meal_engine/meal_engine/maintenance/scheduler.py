"""Daily maintenance: order backfill, credit expiry, trial completion and stale-pause cancellation.

:class:`MaintenanceScheduler` runs the four tasks sequentially, each in its
own session so that one task's failure is logged, recorded and reported
without affecting the others.  Every task execution leaves a
``maintenance_runs`` row behind.

The daily run is normally triggered by an external scheduler through the
API.  :class:`MaintenanceLoop` is an optional in-process trigger driven by a
cron expression, supporting a simple subset of cron syntax (hourly, daily,
weekly) without requiring a full cron parser dependency.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meal_engine.clock import Clock
from meal_engine.config import EngineSettings
from meal_engine.fulfillment.generator import OrderGenerator
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import MaintenanceRunStatus
from meal_engine.models.results import MaintenanceReport, MaintenanceSummary, TaskOutcome
from meal_engine.state.repository import MaintenanceRunRepository
from meal_engine.subscriptions.lifecycle import SubscriptionLifecycle
from meal_engine.trials.engine import TrialEngine

logger = logging.getLogger(__name__)

TaskFn = Callable[[AsyncSession], Awaitable[dict[str, Any]]]

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

# Pre-compiled patterns for the supported cron subset.
_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time from a cron expression.

    Supports:

    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- daily at *H*:*M*.
    * ``M H * * D`` -- weekly on day-of-week *D* (0=Sunday) at *H*:*M*.

    The expression is evaluated in *from_time*'s timezone.

    Raises
    ------
    ValueError
        If the cron expression does not match any supported pattern.
    """
    expr = cron_expression.strip()

    match = _HOURLY_RE.match(expr)
    if match:
        candidate = from_time.replace(minute=int(match.group(1)), second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    match = _DAILY_RE.match(expr)
    if match:
        minute, hour = int(match.group(1)), int(match.group(2))
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    match = _WEEKLY_RE.match(expr)
    if match:
        minute, hour = int(match.group(1)), int(match.group(2))
        # Cron day-of-week: Sunday=0; Python weekday(): Monday=0.
        python_dow = (int(match.group(3)) - 1) % 7
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class MaintenanceScheduler:
    """Run the daily maintenance tasks with per-task isolation.

    Parameters
    ----------
    session_factory:
        Factory for the independent session each task runs in.
    clock:
        Time source shared by every task.
    settings:
        Engine settings passed to the services.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
        settings: EngineSettings,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._settings = settings

    def tasks(self) -> dict[str, TaskFn]:
        """The daily tasks in execution order."""
        return {
            "order_backfill": self._order_backfill,
            "credit_expiry": self._credit_expiry,
            "trial_completion": self._trial_completion,
            "pause_auto_cancel": self._pause_auto_cancel,
        }

    async def _order_backfill(self, session: AsyncSession) -> dict[str, Any]:
        today = self._clock.today(self._settings.tz)
        result = await OrderGenerator(session, self._clock).generate_for_paid_cycles(today)
        await session.commit()
        return result.model_dump(mode="json")

    async def _credit_expiry(self, session: AsyncSession) -> dict[str, Any]:
        expired = await CreditLedger(session, self._clock, self._settings).expire()
        await session.commit()
        return expired

    async def _trial_completion(self, session: AsyncSession) -> dict[str, Any]:
        result = await TrialEngine(session, self._clock, self._settings).complete_trials()
        return result.model_dump(mode="json")

    async def _pause_auto_cancel(self, session: AsyncSession) -> dict[str, Any]:
        result = await SubscriptionLifecycle(session, self._clock, self._settings).auto_cancel_stale_pauses()
        return result.model_dump(mode="json")

    async def run_daily(self, only: list[str] | None = None) -> MaintenanceReport:
        """Run every task (or the named subset) and report per-task outcomes.

        Returns
        -------
        MaintenanceReport
            ``success`` is ``True`` only when every task succeeded.
        """
        started = self._clock.now()
        outcomes: dict[str, TaskOutcome] = {}
        for name, fn in self.tasks().items():
            if only is not None and name not in only:
                continue
            outcomes[name] = await self._run_task(name, fn)

        failed = sum(1 for o in outcomes.values() if not o.success)
        report = MaintenanceReport(
            success=failed == 0,
            timestamp=started,
            results=outcomes,
            summary=MaintenanceSummary(
                total_tasks=len(outcomes),
                successful=len(outcomes) - failed,
                failed=failed,
                has_errors=failed > 0,
            ),
        )
        logger.info(
            "Daily maintenance finished: %d/%d task(s) succeeded",
            report.summary.successful,
            report.summary.total_tasks,
        )
        return report

    async def _run_task(self, name: str, fn: TaskFn) -> TaskOutcome:
        run_id = await self._record_start(name)
        try:
            async with self._session_factory() as session:
                result = await fn(session)
        except Exception as exc:
            logger.error("Maintenance task %s failed: %s", name, exc, exc_info=True)
            await self._record_finish(run_id, MaintenanceRunStatus.FAILED, error=str(exc))
            return TaskOutcome(success=False, error=str(exc))

        logger.info("Maintenance task %s completed: %s", name, result)
        await self._record_finish(run_id, MaintenanceRunStatus.COMPLETED, result=result)
        return TaskOutcome(success=True, result=result)

    async def _record_start(self, name: str) -> str | None:
        try:
            async with self._session_factory() as session:
                run = await MaintenanceRunRepository(session).start(name, self._clock.now())
                await session.commit()
                return run.run_id
        except (OperationalError, InterfaceError):
            logger.warning("Could not record start of maintenance task %s", name, exc_info=True)
            return None

    async def _record_finish(
        self,
        run_id: str | None,
        status: MaintenanceRunStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if run_id is None:
            return
        try:
            async with self._session_factory() as session:
                await MaintenanceRunRepository(session).finish(
                    run_id,
                    status=status,
                    finished_at=self._clock.now(),
                    result=result,
                    error_message=error,
                )
                await session.commit()
        except (OperationalError, InterfaceError):
            logger.warning("Could not record outcome of maintenance run %s", run_id, exc_info=True)


# ---------------------------------------------------------------------------
# In-process trigger
# ---------------------------------------------------------------------------


class MaintenanceLoop:
    """AsyncIO background task that runs :meth:`MaintenanceScheduler.run_daily` on a cron schedule."""

    def __init__(
        self,
        scheduler: MaintenanceScheduler,
        cron_expression: str,
        clock: Clock,
        settings: EngineSettings,
    ) -> None:
        # Fail fast on an unsupported expression.
        compute_next_run(cron_expression, clock.now())
        self._scheduler = scheduler
        self._cron = cron_expression
        self._clock = clock
        self._settings = settings
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def next_run(self) -> datetime:
        local_now = self._clock.now().astimezone(self._settings.tz)
        return compute_next_run(self._cron, local_now)

    async def start(self) -> None:
        if self._running:
            logger.warning("MaintenanceLoop already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("MaintenanceLoop started (cron=%s, next run %s)", self._cron, self.next_run().isoformat())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("MaintenanceLoop stopped")

    async def _run_loop(self) -> None:
        while self._running:
            delay = (self.next_run() - self._clock.now()).total_seconds()
            await asyncio.sleep(max(delay, 0))
            try:
                await self._scheduler.run_daily()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Scheduled maintenance run failed: %s", exc, exc_info=True)

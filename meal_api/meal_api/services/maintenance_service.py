"""Maintenance scheduler wiring for the API process."""

from __future__ import annotations

import logging

from meal_api.middleware.prometheus import record_maintenance_report
from meal_engine.maintenance.scheduler import MaintenanceScheduler
from meal_engine.models.results import MaintenanceReport

logger = logging.getLogger(__name__)


class MeteredMaintenanceScheduler(MaintenanceScheduler):
    """:class:`MaintenanceScheduler` that records task outcomes as Prometheus counters.

    Used both by the HTTP trigger and by the optional in-process loop, so
    the counters are the same whichever path ran the tasks.
    """

    async def run_daily(self, only: list[str] | None = None) -> MaintenanceReport:
        report = await super().run_daily(only)
        record_maintenance_report(report)
        if not report.success:
            failed = [name for name, outcome in report.results.items() if not outcome.success]
            logger.warning("Maintenance run finished with failed task(s): %s", ", ".join(failed))
        return report

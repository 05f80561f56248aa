"""Maintenance trigger endpoints for the external scheduler.

Both endpoints bypass token auth and require
``Authorization: Bearer <API_CRON_SECRET>``.  A run with failed tasks still
returns HTTP 200; the per-task outcomes are in the report body.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep, SessionFactoryDep, SettingsDep
from meal_api.services.maintenance_service import MeteredMaintenanceScheduler
from meal_engine.identity import SYSTEM_ACTOR
from meal_engine.models.results import MaintenanceReport, RenewalReport
from meal_engine.subscriptions.provisioning import SubscriptionProvisioner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def verify_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Reject the request unless it presents the configured cron secret."""
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        logger.error("Maintenance trigger called but API_CRON_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Cron secret not configured")

    presented = request.headers.get("authorization", "")
    if not hmac.compare_digest(presented.encode("utf-8"), f"Bearer {expected}".encode("utf-8")):
        logger.warning("Rejected maintenance trigger with invalid credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/daily", response_model=MaintenanceReport, dependencies=[Depends(verify_cron_secret)])
async def run_daily_maintenance(
    session_factory: SessionFactoryDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    task: list[str] | None = Query(default=None, description="Run only these tasks."),
) -> MaintenanceReport:
    """Run order backfill, credit expiry, trial completion and stale-pause cancellation."""
    scheduler = MeteredMaintenanceScheduler(session_factory, clock, settings)
    if task:
        unknown = sorted(set(task) - set(scheduler.tasks()))
        if unknown:
            raise HTTPException(
                status_code=400,
                detail=f"Unknown maintenance task(s): {', '.join(unknown)}. Valid: {', '.join(scheduler.tasks())}",
            )
    return await scheduler.run_daily(only=task)


@router.post("/renewals", response_model=RenewalReport, dependencies=[Depends(verify_cron_secret)])
async def run_renewals(
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    lead_days: int | None = Query(default=None, ge=0, description="Defaults to MEAL_RENEWAL_LEAD_DAYS."),
) -> RenewalReport:
    """Provision the next cycle and invoice for every active group due for renewal."""
    return await SubscriptionProvisioner(session, clock, settings).renew_due_groups(SYSTEM_ACTOR, lead_days)

"""Vendor endpoints: holiday declarations and the capacity calendar."""

from __future__ import annotations

import logging
from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep
from meal_api.middleware.rbac import require_capability
from meal_api.schemas import HolidayRequest, HolidayResponse
from meal_engine.errors import InvalidWindow
from meal_engine.fulfillment.capacity import CapacityChecker
from meal_engine.fulfillment.holidays import VendorHolidayApplicator
from meal_engine.identity import Actor, Capability, Role, ensure_owner
from meal_engine.models.enums import MealSlot
from meal_engine.models.results import CapacityCheck, HolidayResult
from meal_engine.scheduling.cycles import iter_dates

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vendors", tags=["vendors"])

# Widest date range served by one capacity request.
MAX_CAPACITY_RANGE_DAYS = 62


# ---------------------------------------------------------------------------
# Holidays
# ---------------------------------------------------------------------------


@router.post("/{vendor_id}/holidays", response_model=HolidayResult, status_code=201)
async def declare_holiday(
    vendor_id: str,
    body: HolidayRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_HOLIDAYS)),
) -> HolidayResult:
    """Declare a holiday and skip every scheduled order it covers, crediting each customer."""
    return await VendorHolidayApplicator(session, clock, settings).apply_holiday(
        actor, vendor_id, body.holiday_date, slot=body.slot, reason=body.reason
    )


@router.get("/{vendor_id}/holidays", response_model=list[HolidayResponse])
async def list_holidays(
    vendor_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    actor: Actor = Depends(require_capability(Capability.MANAGE_HOLIDAYS)),
) -> list[HolidayResponse]:
    rows = await VendorHolidayApplicator(session, clock, settings).list_holidays(actor, vendor_id, start, end)
    return [HolidayResponse.model_validate(row) for row in rows]


@router.post("/{vendor_id}/holidays/{holiday_id}/reapply", response_model=HolidayResult)
async def reapply_holiday(
    vendor_id: str,
    holiday_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_HOLIDAYS)),
) -> HolidayResult:
    """Skip orders generated after the holiday was declared."""
    ensure_owner(actor, vendor_id, "vendor")
    return await VendorHolidayApplicator(session, clock, settings).reapply(actor, holiday_id)


@router.delete("/{vendor_id}/holidays/{holiday_id}")
async def delete_holiday(
    vendor_id: str,
    holiday_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_HOLIDAYS)),
) -> dict[str, bool]:
    ensure_owner(actor, vendor_id, "vendor")
    deleted = await VendorHolidayApplicator(session, clock, settings).delete_holiday(actor, holiday_id)
    return {"deleted": deleted}


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------


@router.get("/{vendor_id}/capacity", response_model=list[CapacityCheck])
async def capacity_calendar(
    vendor_id: str,
    session: SessionDep,
    slot: MealSlot = Query(...),
    start: date = Query(...),
    end: date = Query(...),
    actor: Actor = Depends(require_capability(Capability.VIEW_CAPACITY)),
) -> list[CapacityCheck]:
    """Capacity for each date in ``[start, end]``; ``max == 0`` means unlimited.

    Vendors may only read their own calendar.
    """
    if actor.role == Role.VENDOR:
        ensure_owner(actor, vendor_id, "vendor")
    if end < start or end - start > timedelta(days=MAX_CAPACITY_RANGE_DAYS):
        raise InvalidWindow(
            f"Capacity range must be ordered and span at most {MAX_CAPACITY_RANGE_DAYS} days",
            context={"start": start, "end": end, "max_days": MAX_CAPACITY_RANGE_DAYS},
        )
    checks = await CapacityChecker(session).check_many(vendor_id, slot.value, list(iter_dates(start, end)))
    return [checks[day] for day in sorted(checks)]

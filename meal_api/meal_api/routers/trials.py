"""Trial endpoints: eligibility, booking and cancellation."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep
from meal_api.middleware.rbac import require_capability
from meal_api.schemas import TrialRequest, TrialResponse
from meal_engine.identity import Actor, Capability
from meal_engine.models.results import TrialBooking, TrialEligibility
from meal_engine.trials.engine import TrialEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trials", tags=["trials"])


@router.get("/eligibility", response_model=TrialEligibility)
async def trial_eligibility(
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    vendor_id: str = Query(...),
    trial_type_id: str = Query(...),
    actor: Actor = Depends(require_capability(Capability.BOOK_TRIALS)),
) -> TrialEligibility:
    """Whether the caller may book this trial type with this vendor today."""
    return await TrialEngine(session, clock, settings).check_eligibility(actor.subject, vendor_id, trial_type_id)


@router.post("", response_model=TrialBooking, status_code=201)
async def book_trial(
    body: TrialRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.BOOK_TRIALS)),
) -> TrialBooking:
    return await TrialEngine(session, clock, settings).create_trial(
        actor,
        vendor_id=body.vendor_id,
        trial_type_id=body.trial_type_id,
        start_date=body.start_date,
        meals=body.meals,
        delivery_address_id=body.delivery_address_id,
    )


@router.post("/{trial_id}/cancel", response_model=TrialResponse)
async def cancel_trial(
    trial_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.BOOK_TRIALS)),
) -> TrialResponse:
    trial = await TrialEngine(session, clock, settings).cancel_trial(actor, trial_id)
    return TrialResponse.model_validate(trial)

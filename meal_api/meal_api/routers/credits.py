"""Credit endpoints: balances, global credits and administrative adjustments."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep
from meal_api.middleware.rbac import require_capability
from meal_api.schemas import CreditGrantRequest, CreditResponse, CreditVoidRequest, GlobalCreditResponse
from meal_engine.identity import Actor, Capability
from meal_engine.ledger.credits import CreditLedger
from meal_engine.models.enums import CreditStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("", response_model=list[CreditResponse])
async def list_credits(
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    consumer_id: str | None = Query(default=None, description="Defaults to the caller."),
    subscription_id: str | None = Query(default=None),
    status: CreditStatus | None = Query(default=None),
    actor: Actor = Depends(require_capability(Capability.READ_SUBSCRIPTIONS)),
) -> list[CreditResponse]:
    """List subscription credits, newest first."""
    rows = await CreditLedger(session, clock, settings).list_for_consumer(
        actor,
        consumer_id or actor.subject,
        subscription_id=subscription_id,
        status=status,
    )
    return [CreditResponse.model_validate(row) for row in rows]


@router.get("/global", response_model=list[GlobalCreditResponse])
async def list_global_credits(
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    consumer_id: str | None = Query(default=None, description="Defaults to the caller."),
    actor: Actor = Depends(require_capability(Capability.READ_SUBSCRIPTIONS)),
) -> list[GlobalCreditResponse]:
    rows = await CreditLedger(session, clock, settings).list_global(actor, consumer_id or actor.subject)
    return [GlobalCreditResponse.model_validate(row) for row in rows]


@router.post("/grants", response_model=CreditResponse, status_code=201)
async def grant_credit(
    body: CreditGrantRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.ADJUST_CREDITS)),
) -> CreditResponse:
    credit = await CreditLedger(session, clock, settings).grant_adjustment(
        actor,
        body.subscription_id,
        body.quantity,
        note=body.note,
        expires_at=body.expires_at,
    )
    return CreditResponse.model_validate(credit)


@router.post("/{credit_id}/void", response_model=CreditResponse)
async def void_credit(
    credit_id: str,
    body: CreditVoidRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.ADJUST_CREDITS)),
) -> CreditResponse:
    credit = await CreditLedger(session, clock, settings).void(actor, credit_id, note=body.note)
    return CreditResponse.model_validate(credit)

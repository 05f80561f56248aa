"""Subscription endpoints: provisioning, skips, pause, resume and cancel.

Pause, resume and cancel each have a read-only ``preview`` companion that
reports exactly what the commit would do, so clients can show the customer
the credits, refund and auto-cancel date before confirming.
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, Query

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep
from meal_api.middleware.prometheus import SKIPS_TOTAL
from meal_api.middleware.rbac import require_capability
from meal_api.schemas import (
    CancelRequest,
    CreateGroupRequest,
    CycleResponse,
    GroupResponse,
    PauseRequest,
    ResumeRequest,
    SkipRequest,
    SubscriptionResponse,
)
from meal_engine.identity import Actor, Capability
from meal_engine.models.results import (
    CancelPreview,
    CancelResult,
    PausePreview,
    PauseResult,
    ProvisionResult,
    ResumePreview,
    ResumeResult,
    SkipAllowance,
    SkipResult,
)
from meal_engine.scheduling.cycles import mask_to_weekdays
from meal_engine.subscriptions.lifecycle import SubscriptionLifecycle
from meal_engine.subscriptions.provisioning import SubscriptionProvisioner
from meal_engine.subscriptions.skips import SkipEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@router.post("/groups", response_model=ProvisionResult, status_code=201)
async def create_group(
    body: CreateGroupRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.PROVISION_SUBSCRIPTIONS)),
) -> ProvisionResult:
    """Create a group with one subscription per slot, its first cycle and invoice."""
    return await SubscriptionProvisioner(session, clock, settings).create_group(
        actor,
        consumer_id=body.consumer_id,
        vendor_id=body.vendor_id,
        plan_id=body.plan_id,
        start_date=body.start_date,
        slots=body.slots,
        delivery_address_id=body.delivery_address_id,
    )


@router.get("/groups/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.READ_SUBSCRIPTIONS)),
) -> GroupResponse:
    view = await SubscriptionProvisioner(session, clock, settings).get_group(actor, group_id)
    group = view.group
    return GroupResponse(
        group_id=group.group_id,
        consumer_id=group.consumer_id,
        vendor_id=group.vendor_id,
        plan_id=group.plan_id,
        status=group.status,
        start_date=group.start_date,
        renewal_date=group.renewal_date,
        pause_date=group.pause_date,
        resume_at=group.resume_at,
        cancelled_at=group.cancelled_at,
        subscriptions=[
            SubscriptionResponse(
                subscription_id=sub.subscription_id,
                slot=sub.slot,
                weekdays=mask_to_weekdays(sub.weekday_mask),
                status=sub.status,
            )
            for sub in view.subscriptions
        ],
        current_cycle=CycleResponse.model_validate(view.current_cycle) if view.current_cycle else None,
    )


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------


@router.post("/{subscription_id}/skips", response_model=SkipResult, status_code=201)
async def skip_meal(
    subscription_id: str,
    body: SkipRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.SKIP_MEALS)),
) -> SkipResult:
    """Skip one scheduled meal; a credit is issued while skips remain in the cycle."""
    result = await SkipEngine(session, clock, settings).skip(actor, subscription_id, body.service_date, body.slot)
    SKIPS_TOTAL.labels(credited=str(result.credited).lower()).inc()
    return result


@router.get("/{subscription_id}/skip-allowance", response_model=SkipAllowance)
async def skip_allowance(
    subscription_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    on_date: date | None = Query(default=None, description="Day inside the cycle of interest; default today."),
    actor: Actor = Depends(require_capability(Capability.READ_SUBSCRIPTIONS)),
) -> SkipAllowance:
    return await SkipEngine(session, clock, settings).allowance(actor, subscription_id, on_date)


# ---------------------------------------------------------------------------
# Pause
# ---------------------------------------------------------------------------


@router.get("/groups/{group_id}/pause/preview", response_model=PausePreview)
async def preview_pause(
    group_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    pause_date: date = Query(...),
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> PausePreview:
    return await SubscriptionLifecycle(session, clock, settings).preview_pause(actor, group_id, pause_date)


@router.post("/groups/{group_id}/pause", response_model=PauseResult)
async def pause_group(
    group_id: str,
    body: PauseRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> PauseResult:
    return await SubscriptionLifecycle(session, clock, settings).pause(actor, group_id, body.pause_date)


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


@router.get("/groups/{group_id}/resume/preview", response_model=ResumePreview)
async def preview_resume(
    group_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    resume_date: date = Query(...),
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> ResumePreview:
    return await SubscriptionLifecycle(session, clock, settings).preview_resume(actor, group_id, resume_date)


@router.post("/groups/{group_id}/resume", response_model=ResumeResult)
async def resume_group(
    group_id: str,
    body: ResumeRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> ResumeResult:
    return await SubscriptionLifecycle(session, clock, settings).resume(actor, group_id, body.resume_date)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@router.get("/groups/{group_id}/cancel/preview", response_model=CancelPreview)
async def preview_cancel(
    group_id: str,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    cancel_date: date = Query(...),
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> CancelPreview:
    return await SubscriptionLifecycle(session, clock, settings).preview_cancel(actor, group_id, cancel_date)


@router.post("/groups/{group_id}/cancel", response_model=CancelResult)
async def cancel_group(
    group_id: str,
    body: CancelRequest,
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    actor: Actor = Depends(require_capability(Capability.MANAGE_SUBSCRIPTIONS)),
) -> CancelResult:
    result = await SubscriptionLifecycle(session, clock, settings).cancel(
        actor,
        group_id,
        body.cancel_date,
        body.refund_preference,
        reason=body.reason,
        refund_destination=body.refund_destination,
    )
    if result.refund_request is not None:
        logger.info(
            "Refund request %s queued for consumer %s (%s %s)",
            result.refund_request.global_credit_id,
            result.refund_request.consumer_id,
            result.refund_request.amount,
            result.refund_request.currency,
        )
    return result

"""Payment gateway endpoints: signed event receiver and the refund queue.

``POST /payments/events`` bypasses token auth and is authenticated by an
HMAC-SHA256 signature of the raw body in ``X-Payment-Signature``
(``sha256=<hex>``).  Redelivered events are harmless: paying a paid invoice
and settling a refunded credit are both no-ops.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from meal_api.dependencies import ClockDep, EngineSettingsDep, SessionDep, SettingsDep
from meal_api.middleware.prometheus import ORDERS_GENERATED_TOTAL
from meal_api.middleware.rbac import require_capability
from meal_api.schemas import GlobalCreditResponse, PaymentEvent
from meal_engine.identity import Actor, Capability, Role
from meal_engine.ledger.credits import CreditLedger
from meal_engine.subscriptions.provisioning import SubscriptionProvisioner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

SIGNATURE_HEADER = "X-Payment-Signature"

# Identity the engine sees for gateway-originated transitions.
GATEWAY_ACTOR = Actor(subject="payment-gateway", role=Role.SERVICE)


def sign_payload(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature of *body*."""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _verify_signature(body: bytes, signature_header: str, secret: str) -> bool:
    """Constant-time comparison of the presented and expected signatures."""
    if not signature_header.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature_header)


@router.post("/events")
async def payment_event(
    request: Request,
    session: SessionDep,
    clock: ClockDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
) -> dict[str, Any]:
    """Apply ``invoice.paid``, ``invoice.failed`` or ``refund.completed``.

    Other event types are acknowledged and ignored.  The signature is
    verified before the body is parsed.
    """
    secret = settings.payment_webhook_secret.get_secret_value()
    if not secret:
        logger.error("Payment event received but API_PAYMENT_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Payment webhook secret not configured")

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        raise HTTPException(status_code=401, detail=f"Missing {SIGNATURE_HEADER} header")
    if not _verify_signature(body, signature, secret):
        logger.warning("Rejected payment event with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = PaymentEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid event payload")

    provisioner = SubscriptionProvisioner(session, clock, engine_settings)
    if event.type == "invoice.paid":
        if not event.invoice_id:
            raise HTTPException(status_code=400, detail="invoice_id is required")
        generation = await provisioner.mark_invoice_paid(GATEWAY_ACTOR, event.invoice_id, reference=event.reference)
        if generation is None:
            return {"status": "ok", "event_type": event.type, "orders_created": 0}
        ORDERS_GENERATED_TOTAL.inc(generation.created)
        return {"status": "ok", "event_type": event.type, "orders_created": generation.created}

    if event.type == "invoice.failed":
        if not event.invoice_id:
            raise HTTPException(status_code=400, detail="invoice_id is required")
        invoice = await provisioner.mark_invoice_failed(GATEWAY_ACTOR, event.invoice_id)
        return {"status": "ok", "event_type": event.type, "invoice_status": invoice.status}

    if event.type == "refund.completed":
        if not event.global_credit_id or not event.reference:
            raise HTTPException(status_code=400, detail="global_credit_id and reference are required")
        credit = await CreditLedger(session, clock, engine_settings).settle_refund(
            GATEWAY_ACTOR, event.global_credit_id, event.reference
        )
        return {"status": "ok", "event_type": event.type, "global_credit_status": credit.status}

    logger.info("Ignoring payment event of type %s", event.type)
    return {"status": "ignored", "event_type": event.type}


@router.get("/refunds/pending", response_model=list[GlobalCreditResponse])
async def pending_refunds(
    session: SessionDep,
    clock: ClockDep,
    settings: EngineSettingsDep,
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(require_capability(Capability.PROCESS_REFUNDS)),
) -> list[GlobalCreditResponse]:
    """Global credits awaiting a cash refund, oldest first."""
    rows = await CreditLedger(session, clock, settings).list_pending_refunds(actor, limit)
    return [GlobalCreditResponse.model_validate(row) for row in rows]

"""
Payment Router - PayChangu charge, poll, redirect callback and webhook
Webhook is defined FIRST; it is unauthenticated and must not pick up auth dependencies
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as SchemaError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, get_services, is_admin
from database import get_db
from models.payments import InitiatePaymentRequest, MobileMoneyChargeRequest, WebhookPayload
from services.container import ServiceContainer
from services.identity import IdentityUser
from services.paychangu_client import parse_tx_ref
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

payment_router = APIRouter(tags=["payments"])


def signature_is_valid(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """PayChangu signs the raw webhook body with HMAC-SHA256 (hex digest)."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST
@payment_router.post("/api/payment-webhook")
async def payment_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    """
    Handle PayChangu webhook pushes.

    The payload is only a trigger: the reference is re-verified with the
    gateway in the background. Once the payload is accepted the answer is
    always 200, including for duplicates, so the gateway never retries.
    """
    payload = await request.body()
    logger.info(f"Payment webhook received: {len(payload)} bytes")

    secret = services.settings.paychangu_webhook_secret
    if secret and not signature_is_valid(payload, request.headers.get("signature"), secret):
        logger.error("PayChangu webhook signature verification failed")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "Invalid webhook signature"}
        )

    try:
        body = WebhookPayload.model_validate(json.loads(payload or b"{}"))
    except (ValueError, SchemaError) as e:
        logger.error(f"Invalid webhook payload: {e}")
        return error_response("validation_error", status=400, message="Invalid webhook payload")

    hint = parse_tx_ref(body.tx_ref)
    if not body.tx_ref or not (body.user_id or hint):
        logger.error(f"Missing webhook parameters: tx_ref={body.tx_ref!r}")
        return error_response(
            "validation_error",
            status=400,
            message="Missing required webhook parameters",
            data={"missing": {"tx_ref": not body.tx_ref, "uuid": not (body.user_id or hint)}},
        )

    queued = services.webhook_queue.enqueue(body.tx_ref, body.user_id)
    return JSONResponse(
        status_code=200,
        content={"ok": True, "received": True, "queued": queued, "message": "Webhook received"}
    )


@payment_router.get("/payment-callback")
async def payment_callback(
    tx_ref: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """
    Browser redirect from PayChangu after checkout.

    Any `status` query parameter the gateway appends is ignored; the
    outcome shown to the user comes from re-verification.
    """
    logger.info(f"Payment callback received: tx_ref={tx_ref}")
    redirect_to = await services.payment_service(db).handle_callback(tx_ref)
    return RedirectResponse(url=redirect_to, status_code=302)


@payment_router.post("/api/initiate-payment")
async def initiate_payment(
    request: InitiatePaymentRequest,
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Create a PayChangu hosted checkout for a subscription payment."""
    admin = await is_admin(current_user, db)
    result = await services.payment_service(db).initiate_payment(current_user, request, is_admin=admin)
    return success_response(result, message="Payment initiated. Please complete on the next page.")


@payment_router.post("/api/charge-mobile-money")
async def charge_mobile_money(
    request: MobileMoneyChargeRequest,
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Create a mobile-money charge (Airtel Money / TNM Mpamba) for the caller."""
    result = await services.payment_service(db).charge_mobile_money(current_user, request)
    return success_response(result, message="Mobile money payment initiated. Please complete on the next page.")


@payment_router.get("/api/check-payment/{tx_ref}")
async def check_payment(
    tx_ref: str,
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Report the payment status, re-verifying with the gateway while it is pending."""
    admin = await is_admin(current_user, db)
    result = await services.payment_service(db).check_payment(tx_ref, current_user.uid, is_admin=admin)
    return success_response(result.to_dict(), message=f"Payment {result.status}")

"""
Payment Service - charge initiation and the payment verification flow

Three entry points (user poll, gateway redirect callback, gateway webhook)
converge on process(), which always re-verifies with the gateway and
moves a payment to its terminal status at most once.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

from config.settings import Settings
from crud.ledger import SubscriptionLedger
from database_models import (
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESSFUL,
    TERMINAL_STATUSES,
    Payment,
)
from models.payments import InitiatePaymentRequest, MobileMoneyChargeRequest
from services.identity import IdentityUser
from services.paychangu_client import (
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    PayChanguClient,
    VerifyResult,
    parse_tx_ref,
)
from services.subscription import compute_extension, to_iso, utcnow
from utils.errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

INVALID_USER_ID = "invalid user id"
UNCONFIRMED_OWNER = "payment owner not confirmed by gateway"

PHONE_PATTERN = re.compile(r"^\+265(99|88)\d{7}$")
MOBILE_MONEY_PROVIDERS = {
    "airtel": "airtel_money",
    "tnm": "tnm_mpamba",
}

# Redirect query value shown by the frontend subscription page
CALLBACK_STATUS = {
    PAYMENT_SUCCESSFUL: "paid",
    PAYMENT_FAILED: "not paid",
    PAYMENT_PENDING: "pending",
}


@dataclass
class VerificationResult:
    tx_ref: str
    status: str
    end_date: Optional[datetime] = None
    error: Optional[str] = None
    credited: bool = False

    def to_dict(self) -> Dict:
        data = {"tx_ref": self.tx_ref, "status": self.status}
        if self.end_date is not None:
            data["endDate"] = to_iso(self.end_date)
        if self.error:
            data["error"] = self.error
        return data


def _stored_result(payment: Payment) -> VerificationResult:
    return VerificationResult(
        tx_ref=payment.tx_ref,
        status=payment.status,
        end_date=payment.period_end,
        error=payment.error,
    )


def missing_fields(**fields) -> Dict[str, bool]:
    return {name: not value for name, value in fields.items() if not value}


class PaymentService:
    """
    Service class for handling payment business logic.
    Built per request around one ledger session.
    """

    def __init__(
        self,
        ledger: SubscriptionLedger,
        gateway: PayChanguClient,
        identity,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.identity = identity
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Charge initiation
    # ------------------------------------------------------------------

    async def initiate_payment(self, caller: IdentityUser, request: InitiatePaymentRequest, is_admin: bool = False) -> Dict:
        """
        Start a hosted-checkout charge for `request.userId`.

        The asserted email must match what the identity provider holds for
        that user; non-admins may only pay for themselves.
        """
        missing = missing_fields(userId=request.userId, email=request.email, firstName=request.firstName)
        if missing:
            raise ValidationError("Missing required fields", details={"missing": missing})
        if request.userId != caller.uid and not is_admin:
            raise ForbiddenError("User ID does not match authenticated user")

        owner = await self.identity.get_user(request.userId)
        if not owner.email or owner.email.lower() != request.email.strip().lower():
            logger.warning(f"Email mismatch on payment initiation: user={request.userId}")
            raise ForbiddenError("Email does not match the identity provider record")

        return await self._start_charge(
            owner,
            amount=request.amount,
            currency=request.currency,
            first_name=request.firstName,
            last_name=request.lastName or "",
        )

    async def charge_mobile_money(self, caller: IdentityUser, request: MobileMoneyChargeRequest) -> Dict:
        """Start a mobile-money charge (Airtel Money / TNM Mpamba) for the caller."""
        missing = missing_fields(phone=request.phone, provider=request.provider)
        if missing:
            raise ValidationError("Missing required fields: phone and provider", details={"missing": missing})
        if not PHONE_PATTERN.match(request.phone):
            raise ValidationError(
                "Invalid phone number format. Use +26599XXXXXX or +26588XXXXXX",
                details={"phone": request.phone},
            )
        provider = MOBILE_MONEY_PROVIDERS.get(request.provider)
        if provider is None:
            raise ValidationError("Invalid provider. Use 'airtel' or 'tnm'", details={"provider": request.provider})

        owner = await self.identity.get_user(caller.uid)
        return await self._start_charge(
            owner,
            amount=request.amount,
            currency=request.currency,
            first_name=owner.first_name,
            last_name=owner.last_name,
            phone=request.phone,
            provider=provider,
        )

    async def _start_charge(
        self,
        owner: IdentityUser,
        amount: Optional[int],
        currency: Optional[str],
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Dict:
        unit_price = self.settings.subscription_unit_price
        amount = amount or unit_price
        currency = currency or self.settings.subscription_currency
        if amount < unit_price:
            raise ValidationError(
                f"amount must be at least {unit_price} {currency}",
                details={"amount": amount},
            )

        meta = {"response": "Subscription Payment"}
        if phone:
            meta.update(phone=phone, provider=provider)

        charge = await self.gateway.charge(
            user_id=owner.uid,
            amount=amount,
            currency=currency,
            email=owner.email,
            first_name=first_name,
            last_name=last_name,
            callback_url=self.settings.callback_url,
            return_url=self.settings.return_url,
            description=f"Monthly subscription for InventoryMW access ({unit_price:,} {currency})",
            meta=meta,
        )

        await self.ledger.ensure_user(owner.uid, {"email": owner.email, "display_name": owner.display_name})
        await self.ledger.create_payment(charge.tx_ref, {
            "user_id": owner.uid,
            "email": owner.email,
            "first_name": first_name,
            "last_name": last_name,
            "amount": amount,
            "currency": currency,
            "checkout_url": charge.checkout_url,
            "mode": charge.mode,
            "phone": phone,
            "provider": provider,
            "created_at": self.clock(),
        })
        logger.info(f"Payment initiated: user={owner.uid} tx_ref={charge.tx_ref} amount={amount} {currency}")
        return {"checkoutUrl": charge.checkout_url, "reference": charge.tx_ref, "status": PAYMENT_PENDING}

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def process(self, tx_ref: str, explicit_user_id: Optional[str] = None, source: str = "poll") -> VerificationResult:
        """
        Re-verify `tx_ref` with the gateway and apply the outcome.

        The stored payment owner is authoritative. An explicit id (webhook
        meta.uuid) is never trusted on its own: when it disagrees it is
        ignored, and only the gateway's own metadata can reject a payment.
        A reference with no ledger record is adopted only if the gateway
        metadata confirms the owner parsed out of the reference.

        Raises:
            GatewayError: If the gateway could not be reached after retries
        """
        payment = await self.ledger.get_payment(tx_ref)
        owner = self._resolve_owner(tx_ref, payment, explicit_user_id)
        if owner is None:
            logger.error(f"[{source}] cannot bind tx_ref={tx_ref} to a user")
            return VerificationResult(tx_ref=tx_ref, status=PAYMENT_FAILED, error=INVALID_USER_ID)

        try:
            await self.identity.get_user(owner)
        except NotFoundError:
            logger.error(f"[{source}] unknown user {owner} for tx_ref={tx_ref}")
            if payment is not None:
                return await self._reject(payment, INVALID_USER_ID)
            return VerificationResult(tx_ref=tx_ref, status=PAYMENT_FAILED, error=INVALID_USER_ID)

        if payment is not None and payment.status in TERMINAL_STATUSES:
            logger.info(f"[{source}] tx_ref={tx_ref} already {payment.status}; no re-verification")
            return _stored_result(payment)

        verification = await self.gateway.verify(tx_ref)
        logger.info(f"[{source}] PayChangu verification for tx_ref={tx_ref}: {verification.outcome}")

        if payment is None:
            if verification.meta_user_id != owner:
                logger.error(
                    f"[{source}] no record for tx_ref={tx_ref} and the gateway does not confirm owner {owner} "
                    f"(meta.uuid={verification.meta_user_id!r}); left unprocessed"
                )
                return VerificationResult(tx_ref=tx_ref, status=PAYMENT_PENDING, error=UNCONFIRMED_OWNER)
            payment = await self._adopt_payment(tx_ref, owner, verification)
        elif verification.meta_user_id and verification.meta_user_id != owner:
            logger.error(f"[{source}] gateway metadata names {verification.meta_user_id}, ledger names {owner}")
            return await self._reject(payment, INVALID_USER_ID, verification)

        if verification.outcome == OUTCOME_SUCCESS:
            return await self._credit(payment, verification)
        if verification.outcome == OUTCOME_FAILED:
            return await self._reject(payment, verification.message or "Payment failed", verification)

        await self.ledger.upsert_payment(tx_ref, {"gateway_response": verification.raw})
        return VerificationResult(tx_ref=tx_ref, status=PAYMENT_PENDING)

    def _resolve_owner(self, tx_ref: str, payment: Optional[Payment], explicit_user_id: Optional[str]) -> Optional[str]:
        """Stored owner, else the id in the reference, else the asserted id."""
        if payment is not None:
            owner = payment.user_id
        else:
            hint = parse_tx_ref(tx_ref)
            owner = hint.user_id if hint else explicit_user_id
        if explicit_user_id and owner and explicit_user_id != owner:
            logger.warning(f"tx_ref={tx_ref}: asserted user {explicit_user_id} ignored, owner is {owner}")
        return owner

    async def _adopt_payment(self, tx_ref: str, owner: str, verification: VerifyResult) -> Payment:
        """Create the ledger record for a charge we have no local trace of."""
        logger.warning(f"No payment record for tx_ref={tx_ref}; creating one from the gateway response")
        return await self.ledger.create_payment(tx_ref, {
            "user_id": owner,
            "amount": verification.amount or self.settings.subscription_unit_price,
            "currency": verification.currency or self.settings.subscription_currency,
            "mode": verification.mode or self.gateway.mode,
            "created_at": self.clock(),
        })

    async def _credit(self, payment: Payment, verification: VerifyResult) -> VerificationResult:
        now = self.clock()
        won = await self.ledger.transition_payment(payment.tx_ref, PAYMENT_SUCCESSFUL, {
            "verified_at": now,
            "gateway_response": verification.raw,
            "error": None,
        })
        if not won:
            stored = await self.ledger.get_payment(payment.tx_ref)
            logger.info(f"tx_ref={payment.tx_ref} was already settled as {stored.status}; credit skipped")
            return _stored_result(stored)

        amount = verification.amount or payment.amount or self.settings.subscription_unit_price
        user = await self.ledger.get_user(payment.user_id, for_update=True)
        current_end = user.subscription_end_date if user is not None else None
        start, end, months = compute_extension(current_end, now, amount, self.settings.subscription_unit_price)
        if months == 0:
            logger.warning(f"tx_ref={payment.tx_ref} paid {amount}, below one period; subscription unchanged")
            return VerificationResult(tx_ref=payment.tx_ref, status=PAYMENT_SUCCESSFUL, end_date=current_end)

        patch = {"subscription_start_date": start, "subscription_end_date": end}
        if user is None:
            patch.update(email=payment.email, has_used_trial=False)
        await self.ledger.upsert_user(payment.user_id, patch)
        await self.ledger.upsert_payment(payment.tx_ref, {"period_start": start, "period_end": end})
        logger.info(
            f"Subscription updated: user={payment.user_id} tx_ref={payment.tx_ref} "
            f"months={months} start={to_iso(start)} end={to_iso(end)}"
        )
        return VerificationResult(tx_ref=payment.tx_ref, status=PAYMENT_SUCCESSFUL, end_date=end, credited=True)

    async def _reject(self, payment: Payment, reason: str, verification: Optional[VerifyResult] = None) -> VerificationResult:
        patch = {"verified_at": self.clock(), "error": reason}
        if verification is not None:
            patch["gateway_response"] = verification.raw
        won = await self.ledger.transition_payment(payment.tx_ref, PAYMENT_FAILED, patch)
        if not won:
            stored = await self.ledger.get_payment(payment.tx_ref)
            return _stored_result(stored)
        logger.warning(f"Payment rejected: tx_ref={payment.tx_ref} reason={reason}")
        return VerificationResult(tx_ref=payment.tx_ref, status=PAYMENT_FAILED, error=reason)

    async def record_error(self, tx_ref: str, message: str) -> None:
        """Start a clean transaction and note `message` on the payment record."""
        await self.ledger.db.rollback()
        if await self.ledger.upsert_payment(tx_ref, {"error": message}) is None:
            logger.warning(f"Could not record error for unknown tx_ref={tx_ref}: {message}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def check_payment(self, tx_ref: str, requester_uid: str, is_admin: bool = False) -> VerificationResult:
        """
        User-initiated poll.

        Other users' references look exactly like unknown ones (404).
        Terminal payments are answered from the ledger without a gateway call.
        """
        payment = await self.ledger.get_payment(tx_ref)
        if payment is None or (payment.user_id != requester_uid and not is_admin):
            logger.warning(f"Payment not found or unauthorized: tx_ref={tx_ref} requester={requester_uid}")
            raise NotFoundError("Payment not found or unauthorized")
        if payment.status in TERMINAL_STATUSES:
            return _stored_result(payment)
        return await self.process(tx_ref, source="poll")

    async def handle_callback(self, tx_ref: Optional[str]) -> str:
        """
        Gateway browser redirect. Never trusts the redirect's own status.

        Returns:
            The frontend URL to redirect the browser to
        """
        if not tx_ref:
            return self.redirect_url(PAYMENT_FAILED, error="Missing transaction reference")
        if parse_tx_ref(tx_ref) is None and await self.ledger.get_payment(tx_ref) is None:
            return self.redirect_url(PAYMENT_FAILED, error="Invalid transaction reference format")

        try:
            result = await self.process(tx_ref, source="callback")
        except Exception as e:
            logger.error(f"Error in payment callback for tx_ref={tx_ref}: {e}", exc_info=True)
            await self.record_error(tx_ref, str(e))
            return self.redirect_url(PAYMENT_PENDING, tx_ref=tx_ref, error=getattr(e, "message", str(e)))
        return self.redirect_url(result.status, tx_ref=tx_ref, error=result.error)

    def redirect_url(self, status: str, tx_ref: Optional[str] = None, error: Optional[str] = None) -> str:
        params = {"status": CALLBACK_STATUS.get(status, CALLBACK_STATUS[PAYMENT_FAILED])}
        if tx_ref:
            params["tx_ref"] = tx_ref
        if error:
            params["error"] = error
        return f"{self.settings.frontend_url.rstrip('/')}/subscription?{urlencode(params)}"

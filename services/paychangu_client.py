"""
PayChangu gateway client - charge creation and transaction verification
with bounded exponential-backoff retries
"""

import asyncio
import json
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from utils.errors import GatewayError

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"

# Upstream message for a reference the gateway has never seen
NOT_CREATED_MESSAGE = "Payment transaction not created."

_SUCCESS_STATES = {"success", "successful", "paid", "completed"}
_FAILED_STATES = {"failed", "cancelled", "canceled", "expired", "declined", "reversed"}

# <user id>-<epoch millis>-<nonce>; the two trailing numeric fields are
# matched from the right so ids that contain "-" still parse
TX_REF_PATTERN = re.compile(r"^(?P<user_id>.+)-(?P<timestamp>\d{10,})-(?P<nonce>\d{1,6})$")


@dataclass
class TxRef:
    user_id: str
    timestamp: int
    nonce: int


@dataclass
class ChargeResult:
    checkout_url: str
    tx_ref: str
    mode: str = "live"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    outcome: str
    message: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    meta_user_id: Optional[str] = None
    mode: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def build_tx_ref(user_id: str, now_ms: Optional[int] = None, nonce: Optional[int] = None) -> str:
    """Build a unique transaction reference carrying the owning user id as its prefix."""
    if not user_id:
        raise ValueError("user_id is required to build a transaction reference")
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if nonce is None:
        nonce = random.randint(0, 999)
    return f"{user_id}-{now_ms}-{nonce}"


def parse_tx_ref(tx_ref: Optional[str]) -> Optional[TxRef]:
    """
    Recover the user id hint from a transaction reference.

    The result is unverified: callers must cross-check it against the
    stored payment owner or the gateway metadata.
    """
    if not tx_ref:
        return None
    match = TX_REF_PATTERN.match(tx_ref)
    if not match:
        return None
    return TxRef(
        user_id=match.group("user_id"),
        timestamp=int(match.group("timestamp")),
        nonce=int(match.group("nonce")),
    )


def interpret_verification(payload: Dict[str, Any]) -> VerifyResult:
    """Map a verify-payment response body to success / failed / pending."""
    top_status = str(payload.get("status") or "").lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    data_status = str(data.get("status") or "").lower()

    if top_status == "success" and (not data_status or data_status in _SUCCESS_STATES):
        outcome = OUTCOME_SUCCESS
    elif top_status == "failed" or data_status in _FAILED_STATES:
        outcome = OUTCOME_FAILED
    else:
        outcome = OUTCOME_PENDING

    meta = data.get("meta")
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except ValueError:
            meta = None
    meta_user_id = meta.get("uuid") if isinstance(meta, dict) else None

    amount = data.get("amount")
    try:
        amount = int(float(amount)) if amount is not None else None
    except (TypeError, ValueError):
        amount = None

    message = payload.get("message")
    if message is not None and not isinstance(message, str):
        message = json.dumps(message)

    return VerifyResult(
        outcome=outcome,
        message=message,
        amount=amount,
        currency=data.get("currency"),
        mode=data.get("mode"),
        meta_user_id=meta_user_id,
        raw=payload,
    )


class PayChanguClient:
    """
    Async wrapper for PayChangu operations.

    Retries only on HTTP 429 and on timeouts / connection failures, with
    `retry_delay * 2**attempt` seconds between attempts and at most
    `max_retries` attempts in total. Everything else surfaces at once.
    Other transport failures surface as GatewayError without a retry.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paychangu.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not secret_key:
            raise ValueError("PAYCHANGU_SECRET_KEY not configured")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.mode = "test" if "test" in secret_key.lower() else "live"
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        last_error: Optional[GatewayError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=self.headers,
                    json=payload,
                    timeout=self.timeout,
                )
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = GatewayError(f"PayChangu request to {endpoint} failed: {e.__class__.__name__}")
                logger.warning(f"PayChangu API attempt {attempt}/{self.max_retries} failed for {endpoint}: {e!r}")
            except httpx.TransportError as e:
                # Read/write/protocol failures; the request may already have been applied
                logger.error(f"PayChangu transport error for {endpoint}: {e!r}")
                raise GatewayError(f"PayChangu request to {endpoint} failed: {e.__class__.__name__}")
            else:
                if response.status_code == 429:
                    last_error = GatewayError("PayChangu rate limit exceeded", status=429, payload=_safe_json(response))
                    logger.warning(f"PayChangu API attempt {attempt}/{self.max_retries} rate limited for {endpoint}")
                elif response.status_code >= 400:
                    body = _safe_json(response)
                    error = GatewayError(_error_message(response.status_code, body), status=response.status_code, payload=body)
                    logger.error(f"PayChangu API error for {endpoint}: status={response.status_code} message={error.message}")
                    raise error
                else:
                    body = _safe_json(response)
                    if not isinstance(body, dict):
                        raise GatewayError("Invalid PayChangu response payload", status=response.status_code, payload=body)
                    return body

            if attempt < self.max_retries:
                await self._sleep(self.retry_delay * (2 ** attempt))

        logger.error(f"PayChangu API gave up on {endpoint} after {self.max_retries} attempts")
        raise GatewayError(
            f"{last_error.message} (after {self.max_retries} attempts)",
            status=last_error.status,
            payload=last_error.payload,
        )

    async def charge(
        self,
        user_id: str,
        amount: int,
        currency: str,
        email: str,
        first_name: str,
        last_name: str,
        callback_url: str,
        return_url: str,
        title: str = "InventoryMW Subscription",
        description: str = "Monthly subscription for InventoryMW access",
        meta: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Create a hosted-checkout charge.

        The owner travels twice: as the tx_ref prefix and explicitly as
        meta.uuid, which is what the verification flow trusts.
        """
        tx_ref = build_tx_ref(user_id)
        payload = {
            "amount": str(amount),
            "currency": currency,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "callback_url": callback_url,
            "return_url": return_url,
            "tx_ref": tx_ref,
            "customization": {"title": title, "description": description},
            "meta": {**(meta or {}), "uuid": user_id},
        }
        logger.info(f"Creating PayChangu charge: tx_ref={tx_ref} amount={amount} {currency}")
        body = await self._request("POST", "payment", payload)

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        checkout_url = data.get("checkout_url")
        if body.get("status") != "success" or not checkout_url:
            message = body.get("message") or "No checkout URL received"
            if not isinstance(message, str):
                message = json.dumps(message)
            raise GatewayError(message, payload=body)
        return ChargeResult(checkout_url=checkout_url, tx_ref=tx_ref, mode=self.mode, raw=body)

    async def verify(self, tx_ref: str) -> VerifyResult:
        """Ask the gateway for the authoritative status of a transaction."""
        try:
            body = await self._request("GET", f"verify-payment/{quote(tx_ref, safe='')}")
        except GatewayError as e:
            upstream_message = e.payload.get("message") if isinstance(e.payload, dict) else None
            if e.status == 400 and upstream_message == NOT_CREATED_MESSAGE:
                logger.info(f"PayChangu has no transaction for tx_ref={tx_ref}; treating as failed")
                return VerifyResult(outcome=OUTCOME_FAILED, message="Payment transaction not created", raw=e.payload)
            raise
        return interpret_verification(body)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"message": response.text}


def _error_message(status: int, body: Any) -> str:
    if status == 401:
        return "Invalid PayChangu API key"
    message = body.get("message") if isinstance(body, dict) else None
    if message is None:
        return f"PayChangu request failed with status {status}"
    if not isinstance(message, str):
        return json.dumps(message)
    return message

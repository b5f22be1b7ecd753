"""
Payment request models
"""
import json
from typing import Any, Optional

from pydantic import BaseModel, Field


class InitiatePaymentRequest(BaseModel):
    userId: Optional[str] = None
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = ""
    amount: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = None


class MobileMoneyChargeRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = None
    phone: Optional[str] = None
    provider: Optional[str] = None


class WebhookPayload(BaseModel):
    tx_ref: Optional[str] = None
    # PayChangu sends meta either as an object or as a JSON-encoded string
    meta: Optional[Any] = None

    model_config = {"extra": "allow"}

    @property
    def user_id(self) -> Optional[str]:
        meta = self.meta
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                return None
        if not isinstance(meta, dict) or not meta.get("uuid"):
            return None
        return str(meta["uuid"])

"""
Subscription window arithmetic and trial handling
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from crud.ledger import SubscriptionLedger
from config.settings import ROLE_USER
from utils.errors import ValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the ledger columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar-month addition. The day is clamped to the last day of the
    target month, so Jan 31 + 1 month is Feb 28/29.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def months_paid(amount: int, unit_price: int) -> int:
    if unit_price <= 0:
        raise ValueError("unit_price must be positive")
    return max(int(amount) // unit_price, 0)


def compute_extension(
    current_end: Optional[datetime],
    now: datetime,
    amount: int,
    unit_price: int,
) -> Tuple[datetime, datetime, int]:
    """
    Work out the new subscription window for a credited payment.

    A window that already lapsed restarts from now; a live window is
    extended from its current end.

    Returns:
        (start, end, months) where end = max(current_end, now) + months
    """
    base = current_end if current_end is not None and current_end > now else now
    months = months_paid(amount, unit_price)
    return base, add_months(base, months), months


def is_active(end_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if end_date is None:
        return False
    return end_date > (now or utcnow())


class TrialService:
    """
    Service for starting trial periods.
    A trial is just a subscription window that was not paid for.
    """

    def __init__(self, ledger: SubscriptionLedger, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.clock = clock

    async def start_trial(self, user_id: str, days: int, once_only: bool = False, email: Optional[str] = None) -> datetime:
        """
        Start a trial of `days` days for the user.

        Args:
            user_id: Firebase uid
            days: Trial length
            once_only: Reject users that already used a trial
            email: Stored on the user row when it is created

        Returns:
            The trial end date

        Raises:
            ValidationError: If the user already has an active window, or
                already used the one-time trial
        """
        user = await self.ledger.get_user(user_id)
        now = self.clock()

        if once_only and user is not None and user.has_used_trial:
            logger.info(f"Trial refused, already used: user={user_id}")
            raise ValidationError("You have already used your free trial.")

        if user is not None and is_active(user.subscription_end_date, now):
            logger.info(f"Trial refused, window still active: user={user_id} end={to_iso(user.subscription_end_date)}")
            raise ValidationError("You already have an active subscription or trial.")

        end_date = now + timedelta(days=days)
        patch = {
            "subscription_start_date": now,
            "subscription_end_date": end_date,
            "role": (user.role if user is not None else None) or ROLE_USER,
            "has_used_trial": True,
        }
        if user is None and email:
            patch["email"] = email
        await self.ledger.upsert_user(user_id, patch)
        logger.info(f"Trial started: user={user_id} days={days} end={to_iso(end_date)}")
        return end_date

"""
SubscriptionLedger for database operations on users and payments
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import PAYMENT_PENDING, TERMINAL_STATUSES, Payment, User


class SubscriptionLedger:
    """
    Repository class for the subscription ledger.

    Holds two mappings: user id -> subscription window and tx_ref -> payment
    record. Writes are merges: keys present in a patch overwrite, absent
    keys are left alone. Nothing is ever deleted.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the ledger with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user(self, user_id: str, for_update: bool = False) -> Optional[User]:
        """
        Retrieve a user by id.

        Args:
            user_id: Firebase uid
            for_update: Lock the row until the transaction ends (no-op on SQLite)

        Returns:
            User object if found, None otherwise
        """
        query = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def upsert_user(self, user_id: str, patch: Dict[str, Any]) -> User:
        """
        Merge `patch` into the user row, creating it if needed.

        Args:
            user_id: Firebase uid
            patch: Column values to write (e.g., {"subscription_end_date": ...})

        Returns:
            The stored User object
        """
        user = await self.get_user(user_id)
        if user is None:
            user = User(id=user_id)
            self.db.add(user)
        _apply_patch(user, patch)
        await self.db.flush()
        return user

    async def ensure_user(self, user_id: str, defaults: Dict[str, Any]) -> User:
        """Create the user with `defaults` if missing; never overwrites."""
        user = await self.get_user(user_id)
        if user is not None:
            return user
        return await self.upsert_user(user_id, defaults)

    async def get_payment(self, tx_ref: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.tx_ref == tx_ref).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_payment(self, tx_ref: str, fields: Dict[str, Any]) -> Payment:
        """Insert a new pending payment record."""
        payment = Payment(tx_ref=tx_ref, status=PAYMENT_PENDING)
        _apply_patch(payment, fields)
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def upsert_payment(self, tx_ref: str, patch: Dict[str, Any]) -> Optional[Payment]:
        """
        Merge `patch` into an existing payment record.

        Status changes do not go through here; use transition_payment so
        the terminal transition happens exactly once.

        Returns:
            The updated Payment, or None if the reference is unknown
        """
        if "status" in patch:
            raise ValueError("use transition_payment() to change payment status")
        payment = await self.get_payment(tx_ref)
        if payment is None:
            return None
        _apply_patch(payment, patch)
        await self.db.flush()
        return payment

    async def transition_payment(self, tx_ref: str, status: str, patch: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move a pending payment to a terminal status.

        The update is conditional on the row still being pending, so when
        two requests race on the same reference only one of them wins.

        Returns:
            True if this call performed the transition, False if the
            record was already terminal (or does not exist)
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        values = dict(patch or {})
        values["status"] = status
        values["updated_at"] = datetime.utcnow()
        result = await self.db.execute(
            update(Payment)
            .where(Payment.tx_ref == tx_ref, Payment.status == PAYMENT_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _apply_patch(row, patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if not hasattr(row, key):
            raise AttributeError(f"{type(row).__name__} has no column {key!r}")
        setattr(row, key, value)

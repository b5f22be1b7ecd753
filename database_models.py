from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from config.settings import ROLE_USER
from database import Base

# Payment lifecycle
PAYMENT_PENDING = "pending"
PAYMENT_SUCCESSFUL = "successful"
PAYMENT_FAILED = "failed"
TERMINAL_STATUSES = (PAYMENT_SUCCESSFUL, PAYMENT_FAILED)


class User(Base):
    """
    Subscription-side view of a Firebase user.
    The id is the Firebase uid; identity itself lives with the provider.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    role = Column(String, default=ROLE_USER, nullable=False)
    email_notifications = Column(Boolean, default=True, nullable=False)
    inventory_alerts = Column(Boolean, default=True, nullable=False)
    subscription_start_date = Column(DateTime, nullable=True)
    subscription_end_date = Column(DateTime, nullable=True)
    has_used_trial = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Payment(Base):
    """
    One gateway transaction, keyed by its tx_ref.
    Created pending at charge time and moved to a terminal status once.
    """
    __tablename__ = "payments"

    tx_ref = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    checkout_url = Column(String, nullable=True)
    status = Column(String, default=PAYMENT_PENDING, nullable=False, index=True)
    mode = Column(String, default="live", nullable=False)
    phone = Column(String, nullable=True)
    provider = Column(String, nullable=True)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

"""
Subscription Router - trials and subscription status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, get_services
from crud.ledger import SubscriptionLedger
from database import get_db
from services.container import ServiceContainer
from services.identity import IdentityUser
from services.subscription import is_active, to_iso
from utils.responses import success_response

subscription_router = APIRouter(prefix="/api", tags=["subscription"])


@subscription_router.post("/start-trial")
async def start_trial(
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Start a trial unless a subscription or trial is still running."""
    days = services.settings.trial_days
    end_date = await services.trial_service(db).start_trial(current_user.uid, days, email=current_user.email)
    return success_response({"endDate": to_iso(end_date)}, message=f"{days}-day trial started successfully")


@subscription_router.post("/start-free-trial")
async def start_free_trial(
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Start the one-time free trial."""
    days = services.settings.free_trial_days
    end_date = await services.trial_service(db).start_trial(
        current_user.uid, days, once_only=True, email=current_user.email
    )
    return success_response({"endDate": to_iso(end_date)}, message=f"{days}-day free trial started successfully")


@subscription_router.get("/subscription")
async def get_subscription(
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """The caller's ledger record and whether their entitlement is active."""
    user = await SubscriptionLedger(db).get_user(current_user.uid)
    if user is None:
        return success_response({"userId": current_user.uid, "active": False}, message="No subscription record")
    return success_response({
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "settings": {
            "emailNotifications": user.email_notifications,
            "inventoryAlerts": user.inventory_alerts,
        },
        "subscriptionStartDate": to_iso(user.subscription_start_date),
        "subscriptionEndDate": to_iso(user.subscription_end_date),
        "hasUsedTrial": user.has_used_trial,
        "active": is_active(user.subscription_end_date, services.clock()),
    })

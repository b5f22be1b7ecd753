"""
Notification Router - sale receipts, PDF reports and debug emails
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, get_services, is_admin, require_admin
from crud.ledger import SubscriptionLedger
from database import get_db
from models.notifications import PdfNotificationRequest, SaleNotificationRequest
from services import email_templates
from services.container import ServiceContainer
from services.identity import IdentityUser
from services.payment_service import missing_fields
from utils.errors import ForbiddenError, NotFoundError, ValidationError
from utils.responses import success_response

logger = logging.getLogger(__name__)

notification_router = APIRouter(tags=["notifications"])

DEFAULT_NOTIFICATION_SETTINGS = {"email_notifications": True, "inventory_alerts": True}
DISABLED_MESSAGE = "Email notifications are disabled for this user"


def validate_sale_request(request: SaleNotificationRequest) -> None:
    missing = missing_fields(
        userId=request.userId,
        saleData=request.saleData,
        cartItems=request.cartItems,
        totalAmount=request.totalAmount,
    )
    if missing:
        raise ValidationError("Missing required fields", details={"missing": missing})
    if not request.saleData.Sale_id or not request.saleData.Saledate:
        raise ValidationError("saleData must include Sale_id and Saledate", details={"saleData": True})
    for index, item in enumerate(request.cartItems):
        if not item.is_complete():
            raise ValidationError(
                "Each cart item must include item_id, item_name, price, quantity, and total",
                details={"cartItems": index},
            )
    if request.totalAmount <= 0:
        raise ValidationError("totalAmount must be a positive number", details={"totalAmount": request.totalAmount})


@notification_router.post("/api/send-email-notification")
async def send_email_notification(
    request: SaleNotificationRequest,
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """
    Email a sale receipt to `userId`.

    Non-admins may only notify themselves. Users who switched email
    notifications off get a 200 and no email.
    """
    validate_sale_request(request)

    if request.userId != current_user.uid and not await is_admin(current_user, db):
        logger.warning(f"Non-admin {current_user.uid} attempted to notify {request.userId}")
        raise ForbiddenError("Non-admin users can only send notifications for themselves")

    target = await SubscriptionLedger(db).get_user(request.userId)
    if target is None:
        raise NotFoundError("Target user not found")
    if not target.email:
        raise ValidationError("Target user has no registered email", details={"userId": request.userId})
    if not target.email_notifications:
        logger.info(f"Email notifications disabled for user {request.userId}")
        return success_response({"sent": False}, message=DISABLED_MESSAGE)

    message = email_templates.sale_receipt(target.email, request.saleData, request.cartItems, request.totalAmount)
    await services.dispatcher.send(message)
    logger.info(f"Email sent for sale {request.saleData.Sale_id} to user {request.userId}")
    return success_response({"sent": True}, message="Email notification sent successfully")


@notification_router.post("/api/send-pdf-notification")
async def send_pdf_notification(
    request: PdfNotificationRequest,
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Email a PDF sales-and-expense report to the caller."""
    missing = missing_fields(
        userId=request.userId,
        userEmail=request.userEmail,
        pdfBase64=request.pdfBase64,
        filename=request.filename,
    )
    if missing:
        raise ValidationError("Missing required fields", details={"missing": missing})
    if request.userId != current_user.uid:
        raise ForbiddenError("User ID does not match authenticated user")

    user = await SubscriptionLedger(db).ensure_user(
        request.userId, {"email": request.userEmail, **DEFAULT_NOTIFICATION_SETTINGS}
    )
    if not user.email_notifications:
        logger.info(f"Email notifications disabled for user {request.userId}")
        return success_response({"sent": False}, message=DISABLED_MESSAGE)

    message = email_templates.pdf_report(request.userEmail, request.filename, request.pdfBase64)
    await services.dispatcher.send(message)
    logger.info(f"PDF email sent to user {request.userId}: {request.filename}")
    return success_response({"sent": True}, message="PDF email sent successfully")


@notification_router.post("/debug-email")
async def debug_email(
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Send a debug ping to the caller's own address."""
    if not current_user.email:
        raise ValidationError("Authenticated user has no email", details={"email": True})
    await SubscriptionLedger(db).ensure_user(
        current_user.uid, {"email": current_user.email, **DEFAULT_NOTIFICATION_SETTINGS}
    )
    await services.dispatcher.send(email_templates.debug_ping(current_user.email, current_user.uid))
    return success_response({"sent": True}, message="Debug email sent successfully")


@notification_router.get("/test-email")
async def send_test_email(
    current_user: IdentityUser = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Send a configuration check to TEST_EMAIL (admins only)."""
    await services.dispatcher.send(email_templates.smtp_check(services.settings.test_email))
    logger.info(f"Test email sent by {current_user.uid}")
    return success_response({"sent": True}, message="Test email sent successfully")

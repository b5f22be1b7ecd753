"""
Authentication dependencies
"""

import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import ROLE_ADMIN
from crud.ledger import SubscriptionLedger
from database import get_db
from services.container import ServiceContainer
from services.identity import IdentityUser
from utils.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


# Dependency for protected routes
async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    services: ServiceContainer = Depends(get_services),
) -> IdentityUser:
    """
    Dependency function to get the current authenticated user.

    Expects `Authorization: Bearer <Firebase ID token>`; anything else is a 401.
    """
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning(f"No token provided: {request.method} {request.url.path}")
        raise AuthError("No token provided")

    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthError("No token provided")

    return await services.identity.verify_token(token)


async def is_admin(user: IdentityUser, db: AsyncSession) -> bool:
    record = await SubscriptionLedger(db).get_user(user.uid)
    return record is not None and record.role == ROLE_ADMIN


async def require_admin(
    current_user: IdentityUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> IdentityUser:
    if not await is_admin(current_user, db):
        raise ForbiddenError("Admin access required")
    return current_user

"""
Identity lookup backed by the Firebase Admin SDK
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from firebase_admin import auth, credentials

from utils.errors import AuthError, ConfigError, NotFoundError

logger = logging.getLogger(__name__)

APP_NAME = "inventorymw-backend"


@dataclass
class IdentityUser:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def first_name(self) -> str:
        if not self.display_name:
            return "User"
        return self.display_name.split(" ")[0]

    @property
    def last_name(self) -> str:
        if not self.display_name:
            return ""
        parts = self.display_name.split(" ")
        return parts[1] if len(parts) > 1 else ""


class FirebaseIdentityProvider:
    """
    Verifies Firebase ID tokens and resolves uids to profile data.
    The Admin SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(self, project_id: str, client_email: str, private_key: str):
        try:
            self.app = firebase_admin.get_app(name=APP_NAME)
        except ValueError:
            try:
                cred = credentials.Certificate({
                    "type": "service_account",
                    "project_id": project_id,
                    "client_email": client_email,
                    "private_key": private_key,
                    "token_uri": "https://oauth2.googleapis.com/token",
                })
            except ValueError as e:
                raise ConfigError(f"Invalid Firebase service account credentials: {e}")
            self.app = firebase_admin.initialize_app(cred, {"projectId": project_id}, name=APP_NAME)
            logger.info("Firebase Admin SDK initialized")

    async def ping(self) -> int:
        """List a single user to prove the credentials work."""
        page = await asyncio.to_thread(auth.list_users, max_results=1, app=self.app)
        return len(page.users)

    async def verify_token(self, token: str) -> IdentityUser:
        try:
            decoded = await asyncio.to_thread(auth.verify_id_token, token, app=self.app)
        except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError,
                auth.RevokedIdTokenError, auth.CertificateFetchError, auth.UserDisabledError) as e:
            logger.warning(f"Token verification error: {e}")
            raise AuthError("Invalid token", details={"reason": str(e)})
        return IdentityUser(uid=decoded["uid"], email=decoded.get("email"), display_name=decoded.get("name"))

    async def get_user(self, uid: str) -> IdentityUser:
        try:
            record = await asyncio.to_thread(auth.get_user, uid, app=self.app)
        except (ValueError, auth.UserNotFoundError):
            raise NotFoundError(f"User {uid} not found")
        return IdentityUser(uid=record.uid, email=record.email, display_name=record.display_name)

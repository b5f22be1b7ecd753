"""
Application error taxonomy.

Every error carries the HTTP status it maps to so routers can raise them
directly and the app-level handler renders them with error_response().
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    """Malformed or missing request fields."""
    status_code = 400
    error_code = "validation_error"


class AuthError(AppError):
    """Missing or invalid credentials."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(AuthError):
    """Authenticated, but not allowed to touch this resource."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class UpstreamError(AppError):
    """An external service failed after retries were exhausted."""
    status_code = 500
    error_code = "upstream_error"
    retryable = True


class GatewayError(UpstreamError):
    error_code = "gateway_error"

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message, details={"gateway_status": status})
        self.status = status
        self.payload = payload


class NotificationError(UpstreamError):
    error_code = "notification_error"


class ConfigError(AppError):
    """Required configuration is missing; the process must not start."""
    error_code = "config_error"

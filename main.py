"""
InventoryMW Backend - notifications and PayChangu subscription billing
Identity: Firebase Admin. Storage: SQLAlchemy ledger. Email: SMTP.
"""

import os
from pathlib import Path
import logging
import traceback
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from config.settings import Settings, get_settings
from routers.notification_router import notification_router
from routers.payment_router import payment_router
from routers.subscription_router import subscription_router
from services.container import ServiceContainer, build_container
from utils.errors import AppError
from utils.responses import app_error_response, error_response, success_response

logger = logging.getLogger(__name__)


def configure_logging(log_dir: str) -> None:
    """Write all events to <log_dir>/app.log and stderr."""
    logs_path = Path(log_dir)
    logs_path.mkdir(exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(logs_path / "app.log"),
            logging.StreamHandler()
        ]
    )


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception on {request.method} {request.url.path}: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "data": {}, "error": "internal_error", "message": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS (production), X-Frame-Options, X-Content-Type-Options"""

    def __init__(self, app, enforce_hsts: bool = False):
        super().__init__(app)
        self.enforce_hsts = enforce_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # Only set in production where HTTPS is guaranteed
        if self.enforce_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response


def log_settings_presence(settings: Settings) -> None:
    """Log which settings are present; secrets are reported as booleans only."""
    logger.info(
        "Configuration: "
        f"SMTP_HOST={settings.smtp_host} SMTP_PORT={settings.smtp_port} SMTP_USER={settings.smtp_user} "
        f"SMTP_PASS={bool(settings.smtp_pass)} EMAIL_FROM={settings.email_from} PROJECT_ID={settings.project_id} "
        f"CLIENT_EMAIL={settings.client_email} PRIVATE_KEY={bool(settings.private_key)} "
        f"PAYCHANGU_SECRET_KEY={bool(settings.paychangu_secret_key)} "
        f"PAYCHANGU_WEBHOOK_SECRET={bool(settings.paychangu_webhook_secret)}"
    )


def create_app(services: Optional[ServiceContainer] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests pass fakes here). When omitted,
            the production services are built at startup and a missing
            credential aborts startup with ConfigError.
        settings: Settings to use; defaults to the environment
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    app = FastAPI(title="InventoryMW Backend")
    app.state.services = services

    @app.exception_handler(AppError)
    async def handle_app_error(request, exc: AppError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
        return app_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request, exc: RequestValidationError):
        fields = {".".join(str(part) for part in err["loc"][1:]) or "body": err["msg"] for err in exc.errors()}
        return error_response("validation_error", status=400, message="Invalid request", data={"fields": fields})

    app.add_middleware(UncaughtExceptionMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enforce_hsts=settings.is_production)

    # CORS MUST be near the bottom
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # ========================================================================
    # STARTUP / SHUTDOWN
    # ========================================================================
    @app.on_event("startup")
    async def start_services():
        """Validate configuration, build services, create tables. Raises ConfigError on missing credentials."""
        if app.state.services is None:
            configure_logging(settings.log_dir)
            log_settings_presence(settings)
            app.state.services = build_container(settings)
        await app.state.services.startup()
        logger.info("Startup complete")

    @app.on_event("shutdown")
    async def stop_services():
        if app.state.services is not None:
            await app.state.services.shutdown()

    @app.get("/")
    async def root():
        return success_response({"status": "running"}, message="Backend is running")

    # ========================================================================
    # INCLUDE ROUTERS
    # ========================================================================
    app.include_router(payment_router)
    app.include_router(notification_router)
    app.include_router(subscription_router)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))

"""
Process-wide service wiring.

Everything with a lifecycle (DB engine, gateway HTTP client, identity SDK,
mail transport, webhook queue) is built once here at startup and handed
to request handlers through FastAPI dependencies.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config.settings import Settings, validate_settings
from crud.ledger import SubscriptionLedger
from database import create_engine, create_session_factory, init_db, session_scope
from jobs.webhook_queue import WebhookQueue
from services.identity import FirebaseIdentityProvider
from services.notification_service import NotificationDispatcher, SMTPMailer
from services.paychangu_client import PayChanguClient
from services.payment_service import PaymentService
from services.subscription import TrialService, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    identity: Any
    gateway: PayChanguClient
    dispatcher: NotificationDispatcher
    mailer: Optional[Any] = None
    clock: Callable[[], datetime] = utcnow
    webhook_queue: WebhookQueue = field(init=False)

    def __post_init__(self):
        self.webhook_queue = WebhookQueue(
            handler=self.process_webhook,
            on_failure=self.record_webhook_failure,
            max_attempts=self.settings.webhook_max_attempts,
            retry_delay=self.settings.webhook_retry_delay,
        )

    def payment_service(self, db: AsyncSession) -> PaymentService:
        return PaymentService(SubscriptionLedger(db), self.gateway, self.identity, self.settings, clock=self.clock)

    def trial_service(self, db: AsyncSession) -> TrialService:
        return TrialService(SubscriptionLedger(db), clock=self.clock)

    async def process_webhook(self, tx_ref: str, user_id: Optional[str]) -> None:
        async with session_scope(self.session_factory) as db:
            result = await self.payment_service(db).process(tx_ref, explicit_user_id=user_id, source="webhook")
        logger.info(f"Webhook processed: tx_ref={tx_ref} status={result.status}")

    async def record_webhook_failure(self, tx_ref: str, error: str) -> None:
        async with session_scope(self.session_factory) as db:
            await self.payment_service(db).record_error(tx_ref, error)

    async def startup(self) -> None:
        """Create tables and check external services (failures are logged, not fatal)."""
        await init_db(self.engine)
        logger.info("Database initialized successfully")
        try:
            if hasattr(self.identity, "ping"):
                await self.identity.ping()
                logger.info("Identity provider reachable")
        except Exception as e:
            logger.error(f"Identity provider check failed: {e}")
        try:
            if self.mailer is not None:
                await self.mailer.verify()
                logger.info("SMTP configuration verified")
        except Exception as e:
            logger.error(f"SMTP verification failed: {e}")

    async def shutdown(self) -> None:
        await self.webhook_queue.shutdown()
        await self.gateway.aclose()
        await self.engine.dispose()


def build_container(settings: Settings) -> ServiceContainer:
    """
    Construct the production services.

    Raises:
        ConfigError: If required configuration is missing
    """
    validate_settings(settings)
    engine = create_engine(settings.database_url)
    mailer = SMTPMailer(settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_pass)
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        identity=FirebaseIdentityProvider(settings.project_id, settings.client_email, settings.firebase_private_key),
        gateway=PayChanguClient(
            settings.paychangu_secret_key,
            base_url=settings.paychangu_base_url,
            timeout=settings.paychangu_timeout,
            max_retries=settings.paychangu_max_retries,
            retry_delay=settings.paychangu_retry_delay,
        ),
        dispatcher=NotificationDispatcher(
            mailer,
            sender=settings.email_from,
            max_retries=settings.email_max_retries,
            retry_delay=settings.email_retry_delay,
        ),
        mailer=mailer,
    )

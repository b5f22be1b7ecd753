"""
Configuration settings for the application
"""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from utils.errors import ConfigError

DEFAULT_EMAIL_FROM = '"InventoryMW" <inventorymw@gmail.com>'

# User roles
ROLE_ADMIN = "admin"
ROLE_USER = "user"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # SMTP / outbound email
    smtp_host: str = Field(default="smtp.gmail.com", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, alias="SMTP_USER")
    smtp_pass: Optional[str] = Field(default=None, alias="SMTP_PASS")
    email_from: str = Field(default=DEFAULT_EMAIL_FROM, alias="EMAIL_FROM")
    test_email: str = Field(default="test@example.com", alias="TEST_EMAIL")
    email_max_retries: int = Field(default=3, alias="EMAIL_MAX_RETRIES")
    email_retry_delay: float = Field(default=2.0, alias="EMAIL_RETRY_DELAY")

    # Firebase service account (identity provider)
    project_id: Optional[str] = Field(default=None, alias="PROJECT_ID")
    client_email: Optional[str] = Field(default=None, alias="CLIENT_EMAIL")
    private_key: Optional[str] = Field(default=None, alias="PRIVATE_KEY")

    # PayChangu gateway
    paychangu_secret_key: Optional[str] = Field(default=None, alias="PAYCHANGU_SECRET_KEY")
    paychangu_webhook_secret: Optional[str] = Field(default=None, alias="PAYCHANGU_WEBHOOK_SECRET")
    paychangu_base_url: str = Field(default="https://api.paychangu.com", alias="PAYCHANGU_BASE_URL")
    paychangu_timeout: float = Field(default=30.0, alias="PAYCHANGU_TIMEOUT")
    paychangu_max_retries: int = Field(default=3, alias="PAYCHANGU_MAX_RETRIES")
    paychangu_retry_delay: float = Field(default=1.0, alias="PAYCHANGU_RETRY_DELAY")

    # Webhook background processing
    webhook_max_attempts: int = Field(default=3, alias="WEBHOOK_MAX_ATTEMPTS")
    webhook_retry_delay: float = Field(default=5.0, alias="WEBHOOK_RETRY_DELAY")

    # Subscription pricing and trials
    subscription_unit_price: int = Field(default=4500, alias="SUBSCRIPTION_UNIT_PRICE")
    subscription_currency: str = Field(default="MWK", alias="SUBSCRIPTION_CURRENCY")
    trial_days: int = Field(default=7, alias="TRIAL_DAYS")
    free_trial_days: int = Field(default=3, alias="FREE_TRIAL_DAYS")

    # Public URLs and CORS
    public_base_url: str = Field(default="https://server-dmx8.onrender.com", alias="PUBLIC_BASE_URL")
    frontend_url: str = Field(default="https://ibratechinnovations.com", alias="FRONTEND_URL")
    allowed_origins: str = Field(
        default="https://ibratechinnovations.com,https://app.ibratechinnovations.com",
        alias="ALLOWED_ORIGINS",
    )

    # Infrastructure configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./inventorymw.db", alias="DATABASE_URL")
    log_dir: str = Field(default="./logs", alias="LOG_DIR")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")
    render: Optional[str] = Field(default=None, alias="RENDER")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def is_production(self) -> bool:
        return bool(self.render) or (self.env or "").lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def firebase_private_key(self) -> Optional[str]:
        # Keys pasted into env files carry literal "\n" sequences
        if not self.private_key:
            return None
        return self.private_key.replace("\\n", "\n")

    @property
    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/payment-callback"

    @property
    def return_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/subscription?status=completed"

    def missing_required(self) -> List[str]:
        """Names of required credentials that are not configured."""
        required = {
            "SMTP_USER": self.smtp_user,
            "SMTP_PASS": self.smtp_pass,
            "PROJECT_ID": self.project_id,
            "CLIENT_EMAIL": self.client_email,
            "PRIVATE_KEY": self.private_key,
            "PAYCHANGU_SECRET_KEY": self.paychangu_secret_key,
        }
        return [name for name, value in required.items() if not value]


def validate_settings(settings: Settings) -> Settings:
    """
    Fail fast on configuration that would leave the service half-working.

    Raises:
        ConfigError: If credentials are missing or the callback URL is not HTTPS
    """
    missing = settings.missing_required()
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
    if not settings.callback_url.startswith("https://"):
        raise ConfigError(f"PUBLIC_BASE_URL must be HTTPS, got {settings.public_base_url}")
    if settings.is_production and "sqlite" in settings.database_url.lower():
        raise ConfigError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")
    if settings.subscription_unit_price <= 0:
        raise ConfigError("SUBSCRIPTION_UNIT_PRICE must be positive")
    return settings


def get_settings() -> Settings:
    return Settings()

from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

SUPPORTED_PAYMENT_PROVIDERS = ("stripe", "paystack")


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Creditline.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Creditline"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    CORS_ORIGINS: list[str] = []

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Payment gateway
    PAYMENT_PROVIDER: str = "stripe"
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_API_BASE: str = "https://api.paystack.co"
    DEFAULT_CURRENCY: str = "USD"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    # A delivery still "processing" after this long is treated as abandoned.
    WEBHOOK_PROCESSING_LEASE_SECONDS: int = 300

    # Notifications: empty URL means log only
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    # Ledger and campaigns
    ENTITY_TREE_MAX_DEPTH: int = 20
    SEASONAL_EXPIRY_WARNING_DAYS: int = 7
    TRANSACTION_PAGE_LIMIT_MAX: int = 500

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        provider = self.PAYMENT_PROVIDER.strip().lower()
        if provider not in SUPPORTED_PAYMENT_PROVIDERS:
            raise ValueError(
                f"PAYMENT_PROVIDER must be one of {', '.join(SUPPORTED_PAYMENT_PROVIDERS)}"
            )
        self.PAYMENT_PROVIDER = provider

        if self.ENTITY_TREE_MAX_DEPTH < 1:
            raise ValueError("ENTITY_TREE_MAX_DEPTH must be at least 1")

        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_billing_config()
        return self

    def _validate_database_config(self) -> None:
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required outside of tests.")

    def _validate_billing_config(self) -> None:
        """Webhook secrets are mandatory once money is moving."""
        if not self.is_production:
            return
        if self.PAYMENT_PROVIDER == "stripe" and not self.STRIPE_WEBHOOK_SECRET:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production.")
        if self.PAYMENT_PROVIDER == "paystack" and not self.PAYSTACK_SECRET_KEY:
            raise ValueError("PAYSTACK_SECRET_KEY is required in production.")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

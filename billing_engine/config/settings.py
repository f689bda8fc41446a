"""
Application Settings for the Billing Engine

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    PAYMENT_PROVIDER controls which gateway adapter handles charges:
    - stripe: Stripe hosted Checkout (card payments)
    - flutterwave: Flutterwave Standard payment links
    - none: no gateway configured (local development, tests)
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Payment Gateway Configuration
    payment_provider: Literal["stripe", "flutterwave", "none"] = "none"
    payment_gateway_timeout_seconds: float = 15.0
    payment_redirect_url: str = "http://localhost:5173/billing/complete"
    default_currency: str = "USD"

    # Stripe (for payment_provider=stripe)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Flutterwave (for payment_provider=flutterwave)
    flutterwave_secret_key: Optional[str] = None
    flutterwave_secret_hash: Optional[str] = None
    flutterwave_base_url: str = "https://api.flutterwave.com/v3"

    # Billing Policy
    grace_period_days: int = 3
    max_failed_payment_attempts: Optional[int] = None
    renewal_reminder_days: int = 7
    sweep_batch_size: int = 100

    # Admin
    admin_api_key: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_payment_keys(self) -> "Settings":
        """Validate gateway credentials based on selected payment_provider."""
        if self.payment_provider == "stripe":
            if not self.stripe_secret_key or not self.stripe_webhook_secret:
                raise ValueError(
                    "STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET required when PAYMENT_PROVIDER=stripe"
                )

        elif self.payment_provider == "flutterwave":
            if not self.flutterwave_secret_key or not self.flutterwave_secret_hash:
                raise ValueError(
                    "FLUTTERWAVE_SECRET_KEY and FLUTTERWAVE_SECRET_HASH required "
                    "when PAYMENT_PROVIDER=flutterwave"
                )

        if self.grace_period_days < 0:
            raise ValueError("GRACE_PERIOD_DAYS must not be negative")
        if self.max_failed_payment_attempts is not None and self.max_failed_payment_attempts < 1:
            raise ValueError("MAX_FAILED_PAYMENT_ATTEMPTS must be at least 1")

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()

"""
Application Settings for MagnetHub Billing

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Stripe keys and price IDs are optional in development so the service
    can boot without a gateway; production refuses to start without them.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Frontend / CORS Configuration
    client_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Auth Configuration (HS256 bearer tokens issued by the auth service)
    jwt_secret: Optional[str] = None
    jwt_issuer: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id_starter: Optional[str] = None
    stripe_price_id_pro: Optional[str] = None
    stripe_price_id_agency: Optional[str] = None
    stripe_max_network_retries: int = 2

    # Reconciliation
    reconcile_max_attempts: int = 3

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_billing_keys(self) -> "Settings":
        """Require Stripe credentials and price IDs in production."""
        if not self.is_production:
            return self

        missing = [
            name
            for name in (
                "stripe_secret_key",
                "stripe_webhook_secret",
                "stripe_price_id_starter",
                "stripe_price_id_pro",
                "stripe_price_id_agency",
                "database_url",
                "jwt_secret",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"Missing required production settings: {', '.join(sorted(missing))}"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def billing_settings_url(self) -> str:
        """Frontend billing tab, used for checkout and portal redirects."""
        return f"{self.client_url}/settings?tab=billing"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()

"""Configuration settings for the scalingad backend."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings

from scalingad.config import EscrowConfig
from scalingad.payments.processor import STRIPE_API_BASE


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage: "supabase" in production, "sqlite" for a single host, "memory" for tests
    storage_backend: Literal["supabase", "sqlite", "memory"] = "supabase"
    sqlite_path: str = "scalingad.db"

    # Supabase
    supabase_url: str | None = None
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key (deprecated)
    supabase_service_role_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_base: str = STRIPE_API_BASE

    # Escrow
    platform_fee_rate: Decimal = Decimal("0.10")
    currency: str = "USD"
    platform_name: str = "scalingad"
    payout_max_attempts: int = 5
    payout_retry_backoff_seconds: int = 60
    webhook_tolerance_seconds: int = 300

    # Background worker
    worker_enabled: bool = True
    worker_interval_seconds: float = 5.0

    # App
    debug: bool = False
    log_level: str = "INFO"
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "https://scalingad.com",
        "https://www.scalingad.com",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def escrow_config(self) -> EscrowConfig:
        """Engine settings derived from this environment."""
        return EscrowConfig(
            platform_fee_rate=self.platform_fee_rate,
            default_currency=self.currency,
            payout_max_attempts=self.payout_max_attempts,
            payout_retry_backoff_seconds=self.payout_retry_backoff_seconds,
            webhook_tolerance_seconds=self.webhook_tolerance_seconds,
            platform_name=self.platform_name,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Marketplace rules (fee tier
rates, revision bound, offer lifetime) and payment-processor behaviour
(timeouts, retries) live here rather than in the domain code, so operators
can change them without a release.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.processor_timeout_seconds)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the marketplace escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours
    idempotency_wait_seconds: float = Field(default=5.0, gt=0)

    # --- Payment processor ---
    payment_backend: Literal["simulated", "stripe"] = "simulated"
    stripe_api_key: str = ""
    default_currency: str = "usd"
    processor_timeout_seconds: float = Field(default=5.0, gt=0)
    processor_max_attempts: int = Field(default=3, ge=1)
    processor_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # --- Marketplace rules ---
    default_max_revisions: int = Field(default=3, ge=0)
    offer_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # Fee tiers, in basis points of the order amount (3000 = 30%).
    fee_rate_standard_bps: int = Field(default=3000, ge=0, le=10000)
    fee_rate_premium_bps: int = Field(default=2000, ge=0, le=10000)
    fee_rate_exclusive_bps: int = Field(default=1500, ge=0, le=10000)
    fee_rate_hype_bps: int = Field(default=1000, ge=0, le=10000)

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def fee_rates_bps(self) -> dict[str, int]:
        """Fee tier name -> rate in basis points."""
        return {
            "standard": self.fee_rate_standard_bps,
            "premium": self.fee_rate_premium_bps,
            "exclusive": self.fee_rate_exclusive_bps,
            "hype": self.fee_rate_hype_bps,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()

"""
Application settings loaded from environment variables.
Uses pydantic-settings for type-safe configuration.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Core settings with defaults for development."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="POS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = True

    # Cart pricing defaults (a cart may override them at construction)
    tax_rate: Decimal = Decimal("0.08")
    service_charge_rate: Decimal = Decimal("0.10")

    # Payments
    payment_timeout_seconds: float = 30.0
    gateway_failure_threshold: int = 5  # Failures before the gateway breaker opens
    gateway_recovery_seconds: float = 30.0  # Time before a half-open trial call

    # Realtime subscriptions
    realtime_schema: str = "public"
    subscription_timeout_seconds: float = 10.0
    reconciliation_interval_seconds: float = 300.0  # Fallback only, push is primary
    reconnect_max_attempts: int = 20
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    dedup_cache_size: int = 10_000  # Seen (entity, id, version) keys kept per router

    def validate_production(self) -> list[str]:
        """
        Validate settings that must be tightened for production.
        Returns a list of validation errors. Empty list means all checks pass.
        """
        errors = []

        if self.environment == "production":
            if self.debug:
                errors.append("DEBUG must be False in production")
            if self.payment_timeout_seconds > 120:
                errors.append("PAYMENT_TIMEOUT_SECONDS must be at most 120 in production")

        if not Decimal("0") <= self.tax_rate < Decimal("1"):
            errors.append("TAX_RATE must be in [0, 1)")
        if not Decimal("0") <= self.service_charge_rate < Decimal("1"):
            errors.append("SERVICE_CHARGE_RATE must be in [0, 1)")

        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()

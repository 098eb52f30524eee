"""Membership-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
    "gateway_key": "insecure-gateway-key-change-me",
}


class MembershipSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MEMBERSHIP_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/membership.db"

    # API
    api_title: str = "Membership-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    # Shared key of the session gateway that forwards the authenticated user id.
    gateway_key: str = "insecure-gateway-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]
    base_url: str = "http://localhost:3000"

    # Payment provider
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    provider_timeout_seconds: float = 10.0

    # Ledger claim lease; a crashed worker's claim becomes reclaimable after this.
    ledger_lease_seconds: int = 60

    listing_boost_days: int = 7

    # Notifications
    email_provider: str = ""  # "sendgrid" or "resend"
    email_api_key: str = ""
    email_from: str = "billing@example.com"
    email_from_name: str = "Community Billing"

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development":
            if insecure_fields:
                env_vars = ", ".join(f"MEMBERSHIP_{f.upper()}" for f in insecure_fields)
                raise RuntimeError(
                    f"Insecure default values detected in '{self.environment}' environment. "
                    f"Set these environment variables to secure values: {env_vars}. "
                    "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
                )
            if not self.stripe_webhook_secret:
                raise RuntimeError(
                    "MEMBERSHIP_STRIPE_WEBHOOK_SECRET must be set outside development"
                )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys — set MEMBERSHIP_API_KEY and "
                "MEMBERSHIP_GATEWAY_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> MembershipSettings:
    settings = MembershipSettings()
    settings.validate_for_production()
    return settings

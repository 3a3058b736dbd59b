"""Planward-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
}


class PlanwardSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PLANWARD_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/planward.db"

    # API
    api_title: str = "Planward-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Billing provider
    stripe_secret_key: str = ""
    stripe_api_base: str = "https://api.stripe.com"
    stripe_timeout: float = 10.0

    # Explicit on/off switch for entitlement gating. When unset, gating is
    # active whenever Stripe credentials are configured.
    payments_enabled: bool | None = None

    # Process-local entitlement cache, 0 disables it.
    entitlement_cache_ttl: int = 0  # seconds

    @property
    def billing_enabled(self) -> bool:
        """Whether entitlements are gated by billing at all."""
        if self.payments_enabled is not None:
            return self.payments_enabled
        return bool(self.stripe_secret_key)

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"PLANWARD_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}."
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default admin key, set PLANWARD_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> PlanwardSettings:
    settings = PlanwardSettings()
    settings.validate_for_production()
    return settings

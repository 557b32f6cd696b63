"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from collections.abc import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Metering API"
    api_version: str = "0.1.0"
    api_description: str = "Entitlement, credit and usage metering service"

    # Apply pending Alembic migrations before serving
    run_migrations_on_startup: bool = False

    # Reverse proxies whose X-Forwarded-* headers are trusted (comma separated or "*")
    forwarded_allow_ips: str = "*"

    # Security - shared key for the application's request handlers
    internal_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "metering-api"
    deployment_environment: str = "production"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_price_unlimited_monthly: str = ""
    stripe_price_unlimited_annual: str = ""
    stripe_currency: str = "eur"
    checkout_success_url: str = "http://localhost:3000/account?success=true&type=credits"
    checkout_cancel_url: str = "http://localhost:3000/pricing?canceled=true"

    # Period resolution - free allowance refills on the 1st of each month here
    period_timezone: str = "Europe/Dublin"
    periodic_allowance_cap: int = 6

    # Rate limiting (fixed window, per process)
    rate_limit_window_seconds: int = 60
    anonymous_rate_limit: int = 10
    metered_rate_limit: int = 20
    unlimited_rate_limit: int = 60

    # Download quota per generated artifact
    default_download_quota: int = 10

    # Soft caps for unlimited plans (per calendar month)
    unlimited_monthly_generation_cap: int = 300
    unlimited_monthly_download_cap: int = 2000

    # Legacy day passes: generations per local day while the pass is live
    day_pass_daily_generation_cap: int = 100

    # Upper bound on a consume decision, in seconds
    decision_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: refuse to build settings the service cannot run with.

        Every problem is printed to stderr before raising.
        """
        problems = list(self._config_problems())
        if problems:
            banner = "METERING CONFIGURATION INVALID - REFUSING TO START"
            message = "\n".join(["", banner, "-" * len(banner), *(f"  * {p}" for p in problems), ""])
            print(message, file=sys.stderr)
            raise ConfigurationError(message)
        return self

    def _config_problems(self) -> Iterator[str]:
        if not self.database_url:
            yield "DATABASE_URL must be set"
        elif not self.database_url.startswith(("postgresql", "postgres")):
            yield f"DATABASE_URL is not a PostgreSQL URL: {self.database_url[:20]}..."

        try:
            ZoneInfo(self.period_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            yield f"PERIOD_TIMEZONE is not a valid IANA zone: {self.period_timezone}"

        for name in ("periodic_allowance_cap", "rate_limit_window_seconds"):
            if getattr(self, name) <= 0:
                yield f"{name.upper()} must be positive"

    @property
    def read_database_url(self) -> str:
        """Replica URL, or the primary when no replica is configured."""
        return self.database_read_url or self.database_url


# Validated on import
settings = Settings()

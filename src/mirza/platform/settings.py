"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: NOWPAYMENTS__API_KEY=...
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("mirza-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # Public URL used to build gateway callback/success/cancel links
    base_url: str = Field("https://example.com", description="Public base URL of the bot backend")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async SQLAlchemy database URL")
        echo: bool = Field(False, description="Echo SQL statements")
        lock_timeout_seconds: float = Field(
            10.0, description="Maximum wait for a per-aggregate lock"
        )

        @property
        def sqlalchemy_url(self) -> str:
            """Build SQLAlchemy database URL."""
            if self.url:
                return self.url
            return "sqlite+aiosqlite:///./mirza_billing.sqlite"

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing system configuration."""

        default_currency: str = Field("USD", description="Default currency for payments")
        allowed_gateways: list[str] = Field(
            default_factory=lambda: [
                "zarinpal",
                "paypal",
                "stripe",
                "nowpayments",
                "aqayepardakht",
                "crypto",
            ],
            description="Gateways accepted by createPayment",
        )
        min_payment_amount: str = Field("1.00", description="Minimum payment (default currency)")
        max_payment_amount: str = Field(
            "10000.00", description="Maximum payment (default currency)"
        )

        # Lifecycle windows
        payment_expiry_minutes: int = Field(30, description="Pending payment lifetime")
        grace_period_days: int = Field(3, description="Grace period after subscription lapse")
        renewal_reminder_days: int = Field(7, description="Days before expiry to warn users")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # NowPayments
    # ============================================================

    class NowPaymentsSettings(BaseModel):
        """NowPayments gateway configuration."""

        api_key: str = Field("", description="NowPayments API key")
        ipn_secret: str = Field("", description="IPN secret (falls back to API key)")
        base_url: str = Field("https://api.nowpayments.io/v1", description="API base URL")
        pay_currency: str = Field("TRX", description="Cryptocurrency requested from payers")
        timeout_seconds: float = Field(30.0, description="Outbound request timeout")

    nowpayments: NowPaymentsSettings = NowPaymentsSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()

"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
Nested settings use a double underscore: RECETRA_RECEIPTS__MAX_RETRIES=3
"""

from enum import Enum

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
    """

    model_config = SettingsConfigDict(
        env_prefix="RECETRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("recetra", description="Application name")
    app_version: str = Field("0.1.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Receipt Lifecycle
    # ============================================================

    class ReceiptSettings(BaseModel):
        """Receipt issuance and channel dispatch configuration."""

        number_prefix: str = Field("OR", description="Prefix of human-readable receipt numbers")
        default_currency: str = Field("PHP", description="Currency for receipts without one")
        default_locale: str = Field("en_PH", description="Locale used to format amounts")
        default_template_id: str = Field("1", description="Template used when none is given")

        max_retries: int = Field(2, ge=0, description="Retries per channel after the first call")
        retry_backoff_seconds: float = Field(
            0.5, ge=0, description="Fixed wait between channel retries"
        )
        provider_timeout_seconds: float = Field(
            10.0, gt=0, description="Timeout applied to every provider call"
        )
        notify_before_payment: bool = Field(
            True, description="Send email/SMS without waiting for payment to complete"
        )
        identifier_max_attempts: int = Field(
            3, ge=1, description="Identifier regenerations tolerated on a duplicate key"
        )

    receipts: ReceiptSettings = ReceiptSettings()  # type: ignore[call-arg]

    # ============================================================
    # Mock Providers
    # ============================================================

    class ProviderSettings(BaseModel):
        """Latency and failure-rate contract of the mock providers."""

        payment_latency_seconds: float = Field(1.0, ge=0, description="Mock payment latency")
        payment_failure_rate: float = Field(0.1, ge=0, le=1, description="Mock payment failures")
        email_latency_seconds: float = Field(0.5, ge=0, description="Mock email latency")
        email_failure_rate: float = Field(0.05, ge=0, le=1, description="Mock email failures")
        sms_latency_seconds: float = Field(0.4, ge=0, description="Mock SMS latency")
        sms_failure_rate: float = Field(0.1, ge=0, le=1, description="Mock SMS failures")
        seed: int | None = Field(None, description="Seed for reproducible mock outcomes")

    providers: ProviderSettings = ProviderSettings()  # type: ignore[call-arg]

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field("sqlite+aiosqlite:///./recetra.db", description="Async database URL")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: str | Environment) -> Environment:
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

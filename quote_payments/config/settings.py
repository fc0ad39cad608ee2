"""Application settings using Pydantic for environment-based configuration."""
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    payment_gateway: Literal["stripe", "fake"] = Field(
        default="stripe", description="Payment gateway adapter (stripe/fake)"
    )

    # Webhook Ingestion
    webhook_tolerance_seconds: int = Field(
        default=300, ge=1, description="Max clock skew for webhook signature timestamps"
    )
    webhook_processing_lease_seconds: int = Field(
        default=300,
        ge=1,
        description="Age after which an unfinished 'received' event may be reclaimed",
    )
    webhook_max_attempts: int = Field(
        default=5, ge=1, description="Processing attempts after which a failed event is not retried"
    )

    # Gateway Retry Policy
    gateway_max_attempts: int = Field(default=3, ge=1, description="Max gateway call attempts")
    gateway_backoff_base_seconds: float = Field(
        default=0.2, ge=0, description="Initial retry backoff (seconds)"
    )
    gateway_backoff_factor: float = Field(default=2.0, ge=1, description="Backoff multiplier")
    gateway_backoff_cap_seconds: float = Field(
        default=2.0, ge=0, description="Maximum retry backoff (seconds)"
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-call gateway timeout (seconds)"
    )

    # Money and Fees (all amounts in minor units, rates in basis points)
    default_currency: str = Field(default="aud", description="ISO-4217 currency code")
    tax_rate_bps: int = Field(default=1000, ge=0, description="Tax rate (1000 = 10% GST)")
    processor_fee_bps: int = Field(default=175, ge=0, description="Processor percentage fee")
    processor_fixed_fee_cents: int = Field(default=30, ge=0, description="Processor fixed fee")
    platform_fee_bps: int = Field(default=500, ge=0, description="Platform percentage fee")
    min_charge_cents: int = Field(default=50, ge=0, description="Minimum chargeable amount")
    max_transaction_cents: int = Field(
        default=10_000_000, gt=0, description="Maximum single transaction amount"
    )

    # Quotes
    quote_number_prefix: str = Field(default="QT", description="Quote number prefix")
    default_valid_days: int = Field(default=30, ge=1, le=365, description="Default validity")
    max_line_items: int = Field(default=50, ge=1, description="Max line items per quote")

    # Database Configuration
    database_url: str = Field(
        ..., description="Async SQLAlchemy URL, or memory:// for the in-memory store"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="quote-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currencies are stored lower-case, as the processor reports them."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a three-letter ISO-4217 code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def uses_memory_store(self) -> bool:
        """Check if the in-memory persistence adapter is selected."""
        return self.database_url.startswith("memory://")


def load_settings(**overrides: object) -> Settings:
    """
    Build a settings instance from the environment.

    Called once at process start; the result is passed explicitly to every
    component that needs configuration.

    Args:
        **overrides: Values that take precedence over the environment

    Returns:
        Settings: Loaded settings
    """
    return Settings(**overrides)

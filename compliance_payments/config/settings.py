"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paystack Configuration
    paystack_secret_key: str = Field(..., description="Paystack secret key (sk_test_... / sk_live_...)")
    paystack_base_url: str = Field(
        default="https://api.paystack.co", description="Paystack API base URL"
    )
    paystack_timeout_seconds: float = Field(
        default=10.0, description="Timeout for calls to the Paystack API (seconds)"
    )
    paystack_callback_url: Optional[str] = Field(
        default=None, description="Where Paystack redirects after hosted checkout"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Rate Limiting
    rate_limit_backend: str = Field(
        default="memory", description="Rate limiter backend (memory/redis)"
    )
    payment_rate_limit: Optional[int] = Field(
        default=None,
        description="Override for payment operations allowed per user per window",
    )
    payment_rate_window_seconds: Optional[int] = Field(
        default=None, description="Override for the payment operation window (seconds)"
    )
    rate_limit_cleanup_seconds: int = Field(
        default=300, description="Interval between in-memory rate limit sweeps (seconds)"
    )

    # Authentication
    auth_jwt_secret: str = Field(..., description="Secret used to sign user access tokens")
    auth_jwt_audience: str = Field(default="authenticated", description="Expected token audience")
    admin_api_token: Optional[str] = Field(
        default=None, description="Token required by admin endpoints (disabled if unset)"
    )

    # Reconciliation
    reconciliation_interval_seconds: int = Field(
        default=300, description="Interval between reconciliation sweeps (seconds)"
    )
    reconciliation_stale_after_seconds: int = Field(
        default=900, description="Age after which a non-terminal transaction is re-verified"
    )
    reconciliation_batch_size: int = Field(
        default=100, description="Max transactions re-verified per sweep"
    )

    # Application Configuration
    app_name: str = Field(default="compliance-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("paystack_secret_key")
    @classmethod
    def validate_paystack_key(cls, v: str) -> str:
        """Validate that the Paystack secret key has a known prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Paystack secret key format. Must start with 'sk_test_' or 'sk_live_'"
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

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Validate rate limiter backend."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("Invalid rate limit backend. Must be 'memory' or 'redis'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_test_mode(self) -> bool:
        """Check if using a Paystack test key."""
        return self.paystack_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

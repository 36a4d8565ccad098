"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./paycode.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_busy_timeout: float = Field(
        default=5.0, description="SQLite busy timeout before a write is reported as a conflict"
    )

    # Locking
    lock_backend: str = Field(default="local", description="Per-key lock backend (local/redis)")
    lock_timeout_seconds: float = Field(
        default=5.0, description="Max wait for a per-key lock before raising Conflict"
    )
    lock_ttl_seconds: int = Field(default=30, description="Redis lock expiry (seconds)")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Orders
    order_ttl_seconds: int = Field(default=900, description="Payment code lifetime (seconds)")
    payment_code_max_attempts: int = Field(
        default=10, description="Code draws before order creation gives up"
    )
    default_order_description: str = Field(default="Payment", description="Fallback description")

    # Settlement
    conflict_retry_attempts: int = Field(
        default=3, description="Attempts for an atomic unit that lost a storage race"
    )
    conflict_retry_base_delay: float = Field(
        default=0.05, description="Base delay for conflict retry backoff (seconds)"
    )

    # Bank
    bank_account_id: str = Field(default="bank", description="Settlement bank account id")
    bank_display_name: str = Field(default="Settlement Bank", description="Bank display name")
    bank_initial_balance_cents: int = Field(
        default=100_000_000, description="Bank funding pool created at bootstrap (cents)"
    )

    # Ledger
    history_page_size: int = Field(default=50, description="Default transaction page size")
    history_max_page_size: int = Field(default=500, description="Largest allowed page size")

    # Application Configuration
    app_name: str = Field(default="paycode", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:3001",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PAYCODE_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        """Validate lock backend."""
        if v.lower() not in ("local", "redis"):
            raise ValueError("Invalid lock backend. Must be 'local' or 'redis'")
        return v.lower()

    @field_validator("bank_initial_balance_cents")
    @classmethod
    def validate_bank_funding(cls, v: int) -> int:
        """The bank is a finite pool and cannot start negative."""
        if v < 0:
            raise ValueError("Bank funding cannot be negative")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

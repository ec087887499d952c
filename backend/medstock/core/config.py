"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Ledger, alert and transfer policy
knobs live here too so tests and deployments can tune them without code
changes.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - SQLite file for local dev, override via env for PostgreSQL
    database_url: str = "sqlite:///./medstock.db"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Threshold classification
    # ==========================================================================
    expiry_warning_days: int = 7  # items expiring within this window are "expiring"
    expiry_critical_days: int = 3  # inside the window, at or below this -> expiry_critical alert
    expiring_report_days: int = 30  # default horizon for the expiring items listing

    # ==========================================================================
    # Ledger and transfer policy
    # ==========================================================================
    transfer_max_fraction: float = 0.5  # share of source stock a single request may ask for
    min_reason_length: int = 10
    ledger_max_retries: int = 3

    # ==========================================================================
    # Periodic alert sweep
    # ==========================================================================
    alert_sweep_enabled: bool = True
    alert_sweep_interval_seconds: int = 900

    @field_validator("transfer_max_fraction")
    @classmethod
    def validate_transfer_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("transfer_max_fraction must be in (0, 1]")
        return v

    @field_validator("ledger_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("ledger_max_retries must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_expiry_windows(self) -> "Settings":
        """The critical expiry window must sit inside the warning window."""
        if self.expiry_critical_days > self.expiry_warning_days:
            raise ValueError(
                f"expiry_critical_days ({self.expiry_critical_days}) cannot exceed "
                f"expiry_warning_days ({self.expiry_warning_days})"
            )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

"""
Mundoctor Application Configuration
Identity provider, webhook, cache, retry and audit settings
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from MUNDOCTOR_* environment variables"""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="MUNDOCTOR_", extra="ignore")

    # Application
    app_name: str = "Mundoctor"
    app_version: str = "1.0.0"
    debug: bool = False

    # Database
    database_url: str
    database_echo: bool = False

    # Identity provider
    provider_secret_key: str
    provider_publishable_key: Optional[str] = None
    provider_api_url: str = "https://api.clerk.com/v1"
    provider_jwks_url: Optional[str] = None
    provider_issuer: Optional[str] = None
    provider_timeout_seconds: float = 10.0

    # Provider webhooks
    webhook_secret: str
    webhook_tolerance_seconds: int = 300  # 5 minutes of clock skew

    # Authentication cache
    auth_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    auth_cache_max_entries: int = Field(default=1000, gt=0)
    auth_cache_evict_fraction: float = Field(default=0.2, gt=0, le=1)
    auth_cache_key_prefix_length: int = Field(default=50, gt=0)

    # Webhook retry
    webhook_max_retries: int = Field(default=3, ge=1)
    webhook_retry_delay_seconds: float = Field(default=5.0, ge=0)
    webhook_retry_backoff_multiplier: float = Field(default=1.0, ge=1)  # 1.0 keeps a fixed delay
    webhook_retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # Audit
    audit_retention_days: int = Field(default=365, ge=1)
    audit_cleanup_interval_seconds: int = 24 * 60 * 60  # 0 disables the sweep

    # Authorization
    endpoint_default_policy: Literal["allow", "deny"] = "deny"

    # Per-user rate limiting
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100
    rate_limit_professional_scaling: float = 1.5

    # Logging
    log_level: str = "INFO"

    @field_validator("provider_secret_key")
    @classmethod
    def provider_secret_key_must_be_strong(cls, v: str) -> str:
        if len(v) < 16:
            raise ValueError("Identity provider secret key must be at least 16 characters long")
        return v

    @field_validator("webhook_secret")
    @classmethod
    def webhook_secret_must_be_present(cls, v: str) -> str:
        raw = v[len("whsec_") :] if v.startswith("whsec_") else v
        if len(raw) < 16:
            raise ValueError("Webhook secret must be at least 16 characters long")
        return v

    @field_validator("database_url")
    @classmethod
    def database_url_must_be_async(cls, v: str) -> str:
        if "+" not in v.split("://", 1)[0]:
            raise ValueError("Database URL must name an async driver (e.g. postgresql+asyncpg://)")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

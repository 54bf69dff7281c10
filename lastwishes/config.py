"""
Configuration and settings for the portal service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service.

    Environment variable names are the upper-cased field names
    (``DATABASE_URL``, ``REDIS_URL`` ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    site_name: str = Field(default="Book My Last Wishes")
    # Password reset links land back on the site root.
    site_url: str = Field(default="http://localhost:5173")

    # Backend project (auth REST API + serverless functions)
    backend_url: Optional[str] = Field(default=None)
    backend_anon_key: Optional[str] = Field(default=None)

    # Row store (Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    s3_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "LASTWISHES_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Redis (portal session markers + migration retry queue)
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="lastwishes:migration-retries")
    redis_session_prefix: str = Field(default="lastwishes:portal")
    portal_session_ttl_seconds: int = Field(default=60 * 60 * 24)

    # Portal cookie
    portal_cookie_name: str = Field(default="lw_portal")
    portal_cookie_secure: bool = Field(default=False)

    # Migration
    migration_max_attempts: int = Field(default=5)
    migration_max_workers: int = Field(default=8)

    # Payments
    razorpay_key_id: Optional[str] = Field(default=None)
    payment_currency: str = Field(default="INR")

    # Limits
    avatar_max_bytes: int = Field(default=2 * 1024 * 1024)
    cascade_limit: int = Field(default=20)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

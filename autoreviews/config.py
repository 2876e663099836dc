"""
Configuration and settings for the review backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings, read from AUTOREVIEWS_* variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOREVIEWS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Document store: Firestore if a project is set, else SQL if a URL is set.
    firestore_project_id: Optional[str] = Field(default=None)
    google_application_credentials: Optional[str] = Field(default=None)
    database_url: Optional[str] = Field(default=None)
    transaction_max_attempts: int = Field(default=5, ge=1)

    # S3-compatible storage for entity images
    s3_bucket: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Seconds between keep-alive comments on listing streams
    stream_heartbeat_seconds: float = Field(default=15.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

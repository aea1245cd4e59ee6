"""
Configuration and settings for the voice-answer backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")

    # Database (SQLite file or Postgres)
    database_url: str = Field(default="sqlite:///db/db.sqlite")

    # S3-compatible storage
    s3_bucket: Optional[str] = Field(default=None)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_public_base_url: Optional[str] = Field(default=None)
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # HTTP surface
    cors_origin: Optional[str] = Field(default=None)
    # Comma-separated addresses or CIDR networks.
    allowed_ips: str = Field(default="")

    # Uploads
    upload_dir: str = Field(default="uploads")
    allow_reanswer: bool = Field(default=True)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="VOICEQA_USE_IN_MEMORY_BACKENDS"
    )

    @property
    def allowed_ip_list(self) -> list[str]:
        return [item.strip() for item in self.allowed_ips.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

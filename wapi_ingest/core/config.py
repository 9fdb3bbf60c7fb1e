"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="W-API Webhook Ingestion")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite:///./data/ingest.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Media storage
    media_dir: str = Field(default="./uploads")
    public_base_url: str = Field(default="http://localhost:8000")
    max_media_bytes: int = Field(default=64 * 1024 * 1024)

    # Upstream provider
    provider_base_url: str = Field(default="https://api.w-api.app/v1")
    provider_timeout_seconds: float = Field(default=20.0)
    download_timeout_seconds: float = Field(default=30.0)
    max_redirects: int = Field(default=3)

    # Ingestion
    eager_media_timeout_seconds: float = Field(
        default=4.0,
        description="Hard deadline for the synchronous media attempt before acknowledging",
    )
    media_workers: int = Field(default=4, ge=1)
    placeholder_window_seconds: int = Field(
        default=60,
        description="How far back an optimistic outbound placeholder may be reconciled",
    )

    # Diagnostics
    diagnostics_buffer_size: int = Field(default=200, ge=1)
    diagnostics_preview_chars: int = Field(default=4000)

    @property
    def media_path(self) -> Path:
        """Resolved media directory."""
        return Path(self.media_dir).resolve()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

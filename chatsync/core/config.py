"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache
from typing import Optional

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
    app_name: str = Field(default="Chat Sync Service")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Security
    auth_secret: Optional[str] = Field(default=None, description="HS256 signing secret for session tokens")
    session_ttl: int = Field(default=7 * 24 * 3600, gt=0, description="Session token lifetime in seconds")

    # Message store (remote log) and local cache
    database_url: str = Field(default="sqlite:///./data/messages.db")
    cache_url: str = Field(default="sqlite:///./data/cache.db")
    cache_max_messages: int = Field(default=500, ge=1, description="Most recent messages kept per conversation cache")

    # Object storage
    storage_dir: str = Field(default="./data/storage")
    public_base_url: str = Field(default="http://localhost:8000/files")

    # Push notifications
    service_account_file: Optional[str] = Field(default=None, description="Path to a service-account JSON document")
    service_account_json: Optional[str] = Field(default=None, description="Inline service-account JSON document")
    fcm_base_url: str = Field(default="https://fcm.googleapis.com")
    fcm_scope: str = Field(default="https://www.googleapis.com/auth/firebase.messaging")
    http_timeout: float = Field(default=10.0, gt=0)

    # Best-effort side effects
    side_effect_retries: int = Field(default=1, ge=0, le=1)
    resubscribe_delay: float = Field(default=1.0, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @property
    def is_auth_secret_configured(self) -> bool:
        """Check if the session signing secret is properly configured."""
        return bool(self.auth_secret and len(self.auth_secret) > 0)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

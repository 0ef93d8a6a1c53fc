"""Configuration for the chat core using pydantic-settings."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All chat settings, loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # REST backend
    # ------------------------------------------------------------------
    api_base_url: str = "http://localhost:5000/api"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Live transport. Unset REDIS_URL means no live updates (no-op bus).
    # ------------------------------------------------------------------
    redis_url: Optional[str] = None
    presence_ttl_seconds: int = 60
    presence_heartbeat_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Widget timing
    # ------------------------------------------------------------------
    notification_ttl_seconds: float = 5.0
    refresh_debounce_seconds: float = 0.5

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator(
        "request_timeout_seconds",
        "presence_ttl_seconds",
        "presence_heartbeat_seconds",
        "notification_ttl_seconds",
        "refresh_debounce_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()

"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="JellyVR", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    jellyfin_url: HttpUrl = Field(
        default="http://localhost:8096", alias="JELLYFIN_URL"
    )
    cache_lifetime_seconds: int = Field(default=120, alias="CACHE_TTL", ge=1)
    preferred_subtitle_language: str | None = Field(
        default="eng", alias="PREFERRED_SUBTITLE_LANGUAGE"
    )

    progress_interval_seconds: int = Field(
        default=30, alias="PROGRESS_INTERVAL", ge=1
    )
    progress_tracking: bool = Field(default=True, alias="PROGRESS_TRACKING")

    password_length: int = Field(default=6, alias="PASSWORD_LENGTH", ge=4, le=32)
    session_cookie_name: str = Field(
        default="jellyvr_session", alias="SESSION_COOKIE"
    )

    device_name: str = Field(default="Unknown VR HMD", alias="DEVICE_NAME")
    device_id: str = Field(default="jellyvr", alias="DEVICE_ID")
    client_version: str = Field(default="0.1.0", alias="CLIENT_VERSION")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./jellyvr.db", alias="DATABASE_URL"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("preferred_subtitle_language", mode="before")
    @classmethod
    def _blank_language_means_any(cls, value: object) -> object:
        """Treat an empty language as "list every subtitle track"."""

        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    @property
    def jellyfin_base_url(self) -> str:
        """Return the Jellyfin URL without a trailing slash."""

        return str(self.jellyfin_url).rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()

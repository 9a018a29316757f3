"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_QUOTE_CHARACTERS = "\"'“”‘’"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="NeedleDrop", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    discogs_consumer_key: str | None = Field(
        default=None, alias="DISCOGS_CONSUMER_KEY"
    )
    discogs_consumer_secret: str | None = Field(
        default=None, alias="DISCOGS_CONSUMER_SECRET"
    )
    session_secret: str | None = Field(default=None, alias="SESSION_SECRET")

    discogs_token: str | None = Field(default=None, alias="DISCOGS_TOKEN")
    discogs_user: str | None = Field(default=None, alias="DISCOGS_USER")

    discogs_api_url: HttpUrl = Field(
        default="https://api.discogs.com", alias="DISCOGS_API_URL"
    )
    discogs_authorize_url: HttpUrl = Field(
        default="https://www.discogs.com/oauth/authorize",
        alias="DISCOGS_AUTHORIZE_URL",
    )
    discogs_callback_url: HttpUrl | None = Field(
        default=None, alias="DISCOGS_CALLBACK_URL"
    )
    user_agent: str = Field(default="NeedleDrop/2.0", alias="USER_AGENT")
    sync_page_size: int = Field(default=100, alias="SYNC_PAGE_SIZE", ge=1, le=100)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./needledrop.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "discogs_consumer_key",
        "discogs_consumer_secret",
        "session_secret",
        "discogs_token",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("discogs_user", mode="before")
    @classmethod
    def _clean_username(cls, value: object) -> object:
        """Drop the stray quotes that copy-pasted .env values tend to carry."""

        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeError("DISCOGS_USER must be a string")
        cleaned = "".join(ch for ch in value if ch not in _QUOTE_CHARACTERS).strip()
        return cleaned or None

    @property
    def has_consumer_credentials(self) -> bool:
        """Return whether the OAuth consumer key pair is configured."""

        return bool(self.discogs_consumer_key and self.discogs_consumer_secret)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]

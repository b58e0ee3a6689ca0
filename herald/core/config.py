"""
Core configuration module for Herald.
Uses pydantic-settings for environment variable management with full validation.
"""
from __future__ import annotations

from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────────
    APP_NAME: str = "Herald"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Content API ───────────────────────────────────────────────────────────
    API_URL: str = "http://localhost:1337/api"
    API_TOKEN: str | None = None
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_PAGE_SIZE: int = 20

    # ── Push channel ──────────────────────────────────────────────────────────
    PUSH_GATEWAY_URL: str | None = None
    PUSH_TIMEOUT_SECONDS: float = 5.0
    PUSH_REMEMBERED_KEYS: int = 10_000

    # ── Local offline cache ───────────────────────────────────────────────────
    LOCAL_STORE_URL: str = "sqlite+aiosqlite:///./herald_cache.db"
    LOCAL_STORE_MAX_NOTIFICATIONS: int = 100
    PRUNE_CHECK_INTERVAL_SECONDS: float = 3600.0

    # ── Identifier prefixes ───────────────────────────────────────────────────
    FALLBACK_ID_PREFIX: str = "fallback-"
    LOCAL_ID_PREFIX: str = "local-"

    @field_validator("API_URL", mode="before")
    @classmethod
    def normalize_api_url(cls, v: Any) -> str:
        """Reject blank URLs and drop trailing slashes."""
        if not isinstance(v, str) or not v.strip():
            raise ValueError("API_URL must be a non-empty URL")
        return v.strip().rstrip("/")

    @field_validator(
        "LOCAL_STORE_MAX_NOTIFICATIONS",
        "PRUNE_CHECK_INTERVAL_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
        "PUSH_TIMEOUT_SECONDS",
        "PUSH_REMEMBERED_KEYS",
        "DEFAULT_PAGE_SIZE",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be greater than zero")
        return v

    def auth_headers(self) -> dict[str, str]:
        if not self.API_TOKEN:
            return {}
        return {"Authorization": f"Bearer {self.API_TOKEN}"}


settings = Settings()

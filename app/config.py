"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the payment reconciliation service."""

    app_env: str = ENV
    database_url: str = "sqlite:///paycore.db"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Direct-charge rail (Stripe) -------------------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    # --- Payout rail (Trolley) -------------------------------------------
    TROLLEY_API_URL: str = "https://api.trolley.com"
    TROLLEY_API_KEY: str | None = None
    TROLLEY_API_SECRET: str | None = None
    psp_webhook_secret: str | None = None
    psp_webhook_secret_next: str | None = None
    psp_webhook_max_drift_seconds: int = 180

    # --- Rail transport --------------------------------------------------
    RAIL_TIMEOUT_SECONDS: float = 10.0
    RAIL_MAX_RETRIES: int = 2
    RAIL_BACKOFF_BASE_SECONDS: float = 0.5
    RAIL_BACKOFF_MAX_SECONDS: float = 8.0

    # --- Earnings / budget / views ---------------------------------------
    DEFAULT_CURRENCY: str = "GBP"
    DEFAULT_BUDGET_PERIOD: Literal["monthly", "quarterly", "yearly"] = "yearly"
    BUDGET_ENFORCEMENT: Literal["blocking", "advisory"] = "blocking"
    VIEW_CACHE_TTL_SECONDS: int = 300
    VIEW_CACHE_MAXSIZE: int = 5000

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator(
        "psp_webhook_secret",
        "psp_webhook_secret_next",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "TROLLEY_API_KEY",
        "TROLLEY_API_SECRET",
    )
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class AppInfo(BaseModel):
    name: str = "paycore-reconciliation"
    version: str = "0.1.0"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


def load_fresh_settings() -> Settings:
    """Read settings from the environment, bypassing the process cache.

    Used where a value must follow rotation without a restart (rail credentials).
    """

    return Settings()


__all__ = [
    "ENV",
    "Settings",
    "AppInfo",
    "get_settings",
    "load_fresh_settings",
]

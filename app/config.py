"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("PAY_ENV", "dev").lower()

# Shared caller key, only tolerated outside production
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}

# Scheduler (optional, one runner only)
SCHEDULER_ENABLED = os.getenv("PAY_SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}

PROVIDER_CHOICES = {"fake", "stripe"}


class Settings(BaseSettings):
    """Environment configuration for the payments core."""

    app_env: str = ENV
    database_url: str = "sqlite:///payments.db"
    ALLOW_DB_CREATE_ALL: bool = False
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    API_KEYS: list[str] = []
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED

    # --- Provider ---------------------------------------------------------
    PAYMENTS_PROVIDER: str = "fake"
    PAYMENTS_FAKE_ENABLED: bool = False
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    CHECKOUT_BASE_URL: str = "http://localhost:8000"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    psp_webhook_secret: str | None = None
    psp_webhook_secret_next: str | None = None
    psp_webhook_max_drift_seconds: int = 180

    # --- Idempotent creation ---------------------------------------------
    IDEMPOTENCY_POLL_ATTEMPTS: int = 6
    IDEMPOTENCY_POLL_BASE_SECONDS: float = 0.1
    IDEMPOTENCY_POLL_MAX_SECONDS: float = 2.0
    CREATION_LEASE_SECONDS: int = 30

    # --- Reconciliation ---------------------------------------------------
    SWEEPER_INTERVAL_SECONDS: int = 60
    SWEEPER_GRACE_SECONDS: int = 300
    SWEEPER_BATCH_SIZE: int = 100
    SWEEPER_MAX_FAILURES: int = 5
    SWEEPER_QUERY_ATTEMPTS: int = 3
    SWEEPER_QUERY_BACKOFF_SECONDS: float = 0.5
    ORPHAN_MAX_ATTEMPTS: int = 5
    ORPHAN_BACKOFF_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("psp_webhook_secret", "psp_webhook_secret_next")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("PAYMENTS_PROVIDER")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in PROVIDER_CHOICES:
            raise ValueError(f"PAYMENTS_PROVIDER must be one of {sorted(PROVIDER_CHOICES)}")
        return cleaned

    @model_validator(mode="after")
    def _lease_outlives_provider_call(self) -> "Settings":
        """A creation lease must not expire while its gateway call can still be running."""

        if self.CREATION_LEASE_SECONDS <= self.PROVIDER_TIMEOUT_SECONDS:
            raise ValueError(
                "CREATION_LEASE_SECONDS must be greater than PROVIDER_TIMEOUT_SECONDS "
                f"(got {self.CREATION_LEASE_SECONDS} <= {self.PROVIDER_TIMEOUT_SECONDS})"
            )
        return self


class AppInfo(BaseModel):
    name: str = "payments-core"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "PROVIDER_CHOICES",
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]

from __future__ import annotations

import os
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "test", "staging", "prod"] = "dev"

    # -----------------------
    # DB
    # -----------------------
    # empty => in-memory store (dev/tests only)
    DATABASE_URL: str = ""
    DB_POOL_MAX: int = Field(default=10, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=5000, ge=100)

    # -----------------------
    # Sweep (cron trigger)
    # -----------------------
    SWEEP_SECRET: str = ""
    SWEEP_DEFAULT_LIMIT: int = Field(default=20, ge=1)
    SWEEP_MAX_WORKERS: int = Field(default=1, ge=1, le=16)
    STALE_CLAIM_MINUTES: int = Field(default=20, ge=1)

    # -----------------------
    # Retry budget
    # -----------------------
    SETTLEMENT_MAX_ATTEMPTS: int = Field(default=3, ge=1)

    # -----------------------
    # Settlement endpoints
    # -----------------------
    ALLOCATE_API_URL: str = ""
    DISBURSE_API_URL: str = ""
    DISBURSE_API_KEY: str = ""
    DISBURSE_CALLBACK_URL: str = ""
    SETTLEMENT_HTTP_TIMEOUT_S: float = 20.0

    # -----------------------
    # Operator surface
    # -----------------------
    OPERATOR_API_KEY: str = ""
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_OPERATOR_PER_MIN: int = 30

    # -----------------------
    # Worker process (pm2)
    # -----------------------
    WORKER_PROCESS_NAME: str = "settlement-worker"
    WORKER_ECOSYSTEM_FILE: str = "ecosystem.config.json"
    WORKER_POLL_SECONDS: int = 5
    WORKER_BATCH_SIZE: int = 20


settings = Settings()


def _is_blank(value: str | None) -> bool:
    return not (value or "").strip()


def validate_env_settings() -> None:
    """
    Fail fast on staging/prod when required configuration is missing.
    dev/test tolerate gaps (in-memory store, unauthenticated sweep).
    """
    env = (os.getenv("ENV") or settings.ENV or "dev").strip().lower()
    if env not in {"staging", "prod"}:
        return

    missing: list[str] = []
    if _is_blank(settings.DATABASE_URL):
        missing.append("DATABASE_URL")
    if _is_blank(settings.SWEEP_SECRET):
        missing.append("SWEEP_SECRET")
    if _is_blank(settings.OPERATOR_API_KEY):
        missing.append("OPERATOR_API_KEY")
    if _is_blank(settings.ALLOCATE_API_URL):
        missing.append("ALLOCATE_API_URL")
    if _is_blank(settings.DISBURSE_API_URL):
        missing.append("DISBURSE_API_URL")
    if not _is_blank(settings.DISBURSE_API_URL) and _is_blank(settings.DISBURSE_API_KEY):
        missing.append("DISBURSE_API_KEY")

    if missing:
        raise RuntimeError(f"Missing required settings for ENV={env}: {', '.join(missing)}")

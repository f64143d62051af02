from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ------------------------
    # STORAGE
    # ------------------------
    mongo_uri: Optional[str] = None
    mongo_db: str = "points_ledger"

    # ------------------------
    # PAYMENT PROVIDER WEBHOOKS
    # ------------------------
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = Field(default=300, ge=0)
    webhook_timeout_seconds: float = Field(default=8.0, gt=0)

    # ------------------------
    # SUBSCRIPTIONS
    # ------------------------
    trial_days: int = Field(default=14, ge=0)

    # ------------------------
    # POINTS
    # ------------------------
    debit_max_attempts: int = Field(default=3, ge=1)
    debit_retry_backoff_seconds: float = Field(default=0.05, ge=0)
    screening_cost: int = Field(default=1, gt=0)
    voice_interview_cost: int = Field(default=2, gt=0)
    # JSON list of packages overriding the built-in catalog.
    packages_json: Optional[str] = None

    # ------------------------
    # HTTP
    # ------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ------------------------
    # LOGGING
    # ------------------------
    ledger_log_path: Path = Path("logs/points_ledger.jsonl")
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="POINTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

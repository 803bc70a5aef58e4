from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"

    database_url: str = "sqlite:///./receipt_check.db"
    redis_url: str = "redis://localhost:6379/0"

    # Upstream listing of expense applications per month.
    work_item_source_url: str | None = None
    work_item_source_token: str | None = None
    work_item_source_timeout_seconds: float = 30.0

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    verification_timeout_seconds: float = 60.0

    receipt_fetch_timeout_seconds: float = 30.0
    receipt_max_bytes: int = 20 * 1024 * 1024

    chunk_size: int = 10
    pacing_policy: Literal["fixed", "token_bucket"] = "fixed"
    pacing_interval_ms: int = 1500
    pacing_rate_per_second: float = 0.5
    pacing_burst: int = 1

    claim_lease_seconds: int = 180
    max_chunk_failures: int = 5

    driver_interval_ms: int = 500
    dispatch_interval_seconds: float = 5.0


settings = Settings()

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across API, worker, and scripts.
    """

    # ─────────────────────────────────────────────
    # Pydantic Settings Config
    # ─────────────────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # ─────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────
    log_level: str = "INFO"

    # ─────────────────────────────────────────────
    # API
    # ─────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ─────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────
    worker_poll_interval: float = 1.0
    worker_max_poll_interval: float = 30.0
    # 0 disables lease refresh while a handler runs
    worker_heartbeat_interval: float = 30.0
    worker_reaper_interval: float = 60.0

    # ─────────────────────────────────────────────
    # Jobs
    # ─────────────────────────────────────────────
    job_lease_timeout_seconds: int = 900
    job_backoff_base_seconds: float = 10
    job_backoff_cap_seconds: float = 1800
    job_default_max_attempts: int = 5
    job_default_priority: int = 5


# ─────────────────────────────────────────────
# Cached Settings Instance
# ─────────────────────────────────────────────
@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance so config
    is only loaded once per process.
    """
    return Settings()

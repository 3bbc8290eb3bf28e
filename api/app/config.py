# api/app/config.py
from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across the admin API, the crawler worker and services.
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
    database_url_sync: str | None = None

    # ─────────────────────────────────────────────
    # Admin API
    # ─────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    admin_api_token: str = ""

    # ─────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────
    worker_poll_interval: float = 5.0
    worker_concurrency: int = 1
    worker_max_retries: int = 3
    max_posts_per_subject: int = 50

    # ─────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────
    aging_interval_seconds: float = 300.0
    aging_min_age_seconds: float = 3600.0
    aging_priority_boost: int = 10
    scheduler_interval_seconds: float = 60.0
    reclaim_interval_seconds: float = 300.0
    stuck_job_threshold_seconds: float = 1800.0
    stale_requeue_interval_seconds: float = 3600.0
    stale_subject_ttl_seconds: float = 7 * 24 * 3600.0

    # ─────────────────────────────────────────────
    # Upstream
    # ─────────────────────────────────────────────
    crawler_rps: float = 1.66
    upstream_base_url: str = "https://oauth.reddit.com"
    upstream_public_url: str = "https://www.reddit.com"
    upstream_auth_url: str = "https://www.reddit.com/api/v1/access_token"
    upstream_client_id: str | None = None
    upstream_client_secret: str | None = None
    user_agent: str = "crawl-scheduler/0.1"
    http_timeout_seconds: float = 15.0
    http_max_attempts: int = 3
    http_retry_base_seconds: float = 1.0

    # ─────────────────────────────────────────────
    # Derived Properties
    # ─────────────────────────────────────────────
    @property
    def stuck_job_threshold(self) -> timedelta:
        return timedelta(seconds=self.stuck_job_threshold_seconds)

    @property
    def aging_min_age(self) -> timedelta:
        return timedelta(seconds=self.aging_min_age_seconds)

    @property
    def stale_subject_ttl(self) -> timedelta:
        return timedelta(seconds=self.stale_subject_ttl_seconds)


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

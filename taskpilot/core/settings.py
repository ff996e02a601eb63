"""Application settings and lazy settings loader."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Note: docker-compose passes env vars into containers; we validate presence here.
    """

    # Load `.env` if present; always allow `env.example` for local defaults.
    model_config = SettingsConfigDict(
        env_file=(".env", "env.example"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    MONGODB_URL: str
    REDIS_URL: str
    LOG_LEVEL: str = "INFO"
    STORE_BACKEND: Literal["mongo", "memory"] = "mongo"

    # Text-completion service (classification parameters, answers, summaries)
    GOOGLE_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.5-flash"
    LLM_TIMEOUT_S: float = 20.0

    # Worker pool
    QUEUE_CONCURRENCY: int = 2
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_BASE_S: float = 2.0
    TASK_TIMEOUT_S: float = 300.0

    # Confirmation state machine
    CONFIRMATION_TTL_S: int = 10 * 60
    CONFIRMATION_MIN_CONFIDENCE: float = 0.5
    # Background expiry of unanswered questions; 0 disables the sweep
    CONFIRMATION_SWEEP_INTERVAL_S: float = 60.0

    # Per-user task quota - disabled when unset
    QUOTA_TASKS_PER_PERIOD: int | None = None
    QUOTA_PERIOD_S: int = 24 * 60 * 60

    NOTIFICATIONS_ENABLED: bool = False

    # Worker capability inputs (checked once at registration)
    PROSPECT_SOURCE_URL: str | None = None
    RESEARCH_SOURCE_URL: str | None = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance (lazy-loaded)."""
    # Lazy-load to avoid import-time crashes in tooling/tests when env isn't set yet.
    return Settings()

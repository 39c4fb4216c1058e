from __future__ import annotations

import os
from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class CollectionNames:
    """Firestore collection names used by the fetch core."""

    jobs: str
    articles: str
    sources: str
    rate_limits: str
    settings: str

    @classmethod
    def from_env(cls) -> CollectionNames:
        """Create a CollectionNames from environment variables."""
        return cls(
            jobs=os.getenv("FIRESTORE_COLLECTION_FETCH_JOBS", "fetch_jobs"),
            articles=os.getenv("FIRESTORE_COLLECTION_ARTICLES", "articles"),
            sources=os.getenv("FIRESTORE_COLLECTION_SOURCES", "sources"),
            rate_limits=os.getenv("FIRESTORE_COLLECTION_RATE_LIMITS", "rate_limits"),
            settings=os.getenv("FIRESTORE_COLLECTION_SETTINGS", "fetch_settings"),
        )


class FetchSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    ENV: str = "development"
    GCP_PROJECT_ID: str | None = None
    FIRESTORE_DATABASE: str = "(default)"
    ADMIN_API_TOKEN: str | None = None

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    LOG_FILE: str | None = None

    FETCH_TIMEOUT_SECONDS: float = 30.0
    FETCH_MIN_CONTENT_LENGTH: int = 200
    RATE_LIMIT_WAIT_SECONDS: float = 10.0

    HTTP_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )
    HTTP_REQUEST_TIMEOUT_SECONDS: float = 15.0
    HTTP_MAX_RETRIES: int = 2
    HTTP_BACKOFF_SECONDS: float = 0.5
    HTTP_MAX_BACKOFF_SECONDS: float = 8.0

    RENDER_ENDPOINT: str | None = None
    RENDER_TOKEN: str | None = None
    RENDER_MAX_CONCURRENT: int = 2
    RENDER_MAX_CPU: float = 90.0
    RENDER_MAX_MEMORY: float = 90.0
    RENDER_ENABLED: bool = True

    SCRAPER_SERVICE_URL: str | None = None
    SCRAPER_FETCH_MODE: str = "auto"

    OPENAI_API_KEY: str | None = None
    AI_EXTRACTION_MODEL: str = "gpt-4o-mini"
    AI_EXTRACTION_MAX_CHARS: int = 60000

    CREDENTIALS_FILE: str = "config/site-credentials.json"

    WORKER_CONCURRENCY: int = 5
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_SHUTDOWN_GRACE_SECONDS: float = 30.0
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 1.0
    JOB_DEFAULT_PRIORITY: int = 5
    JOB_STALE_AFTER_SECONDS: float = 900.0
    JOB_STORE: str = "firestore"


settings = FetchSettings()
collections = CollectionNames.from_env()

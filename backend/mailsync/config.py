"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsync.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Static API key for the trigger/operator endpoints (empty = open, local dev only)
    api_key_header: str = "X-API-Key"
    api_key: str = ""

    # Google OAuth client used to refresh per-mailbox Gmail credentials
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"

    # Chunk planning
    chunk_threshold: int = 500  # estimated messages at or below this run as one regular job
    chunk_size: int = 100
    default_estimate_initial: int = 1000
    default_estimate_incremental: int = 50

    # Job queue
    job_max_attempts: int = 3
    stale_job_timeout_minutes: int = 10
    # Wall-clock budget per worker invocation (seconds). Checked before each page and each email.
    invocation_budget_seconds: int = 270

    # Provider paging
    provider_page_size: int = 50
    page_fetch_delay_ms: int = 250

    # Store writes are grouped so a chunk never issues one giant transaction
    upsert_batch_size: int = 20

    # Rate limiting (per mailbox + operation)
    rate_limit_requests_per_minute: int = 60
    rate_limit_backoff_seconds: int = 60

    # Circuit breaker (per mailbox + circuit name)
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: int = 300
    circuit_max_cooldown_seconds: int = 3600

    # Secondary attachment pass
    max_synthetic_attachments_per_email: int = 3

    # Celery: beat safety-net sweep interval, and how many invocation chains a new plan starts
    reclaim_sweep_interval_s: int = 300
    max_parallel_invocations: int = 4

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()

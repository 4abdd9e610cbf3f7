"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsync.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Gmail tokens are stored per account at TOKEN_DIR/token_<account_id>.pickle
    token_dir: str = "tokens"
    # Per-account local email stores live at EMAIL_STORE_DIR/emails_<account_id>.db
    email_store_dir: str = "email_stores"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis. When set (and QUEUE_BACKEND=auto) jobs go through Celery.
    redis_url: Optional[str] = None

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Job queue: memory | celery | auto
    queue_backend: str = "auto"
    queue_name: str = "mailsync"
    queue_concurrency: int = 3
    queue_poll_interval_s: float = 0.1
    queue_completed_retention_s: int = 3600
    queue_completed_keep: int = 1000
    queue_failed_retention_s: int = 24 * 3600
    queue_default_attempts: int = 3

    # Call-level retry for Gmail requests
    retry_max_retries: int = 3
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 60.0

    # Gmail paging
    gmail_list_page_size: int = 500
    gmail_detail_batch_size: int = 20  # starting size of a detail batch; the throttle adapts it
    gmail_detail_max_batch_size: int = 40
    gmail_target_rate: float = 47.0  # messages per second, under the 50/s quota
    gmail_history_max_results: int = 500
    gmail_modify_batch_size: int = 1000

    # Full sync tuning
    sync_insert_batch_size: int = 500
    sync_progress_interval: int = 500
    sync_max_job_retries: int = 3
    # Job-level retry waits sync_job_retry_base_s * 2**retry_count (2, 4, 8 minutes)
    sync_job_retry_base_s: float = 60.0

    # Delta sync scheduler
    scheduler_enabled: bool = True
    scheduler_interval_s: float = 30 * 60
    scheduler_initial_delay_s: float = 5.0

    # Auth - optional static API key; set API_KEY in .env
    api_key_header: str = "X-API-Key"
    api_key: str = ""

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> Optional[str]:
        return self.celery_broker_url or self.redis_url

    @property
    def use_celery(self) -> bool:
        backend = (self.queue_backend or "auto").lower()
        if backend == "auto":
            return bool(self.redis_url)
        return backend == "celery"


settings = Settings()

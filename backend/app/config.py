"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./inbox_tasks.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Cache / sync status blackboard. "memory" keeps everything in-process (single worker only).
    redis_url: str = "redis://localhost:6379/0"
    cache_backend: str = "redis"
    tasks_cache_ttl_s: int = 300

    # AI - set OPENAI_API_KEY for task extraction and interview prep
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_extraction_temperature: float = 0.0
    openai_questions_temperature: float = 0.5
    # Email bodies longer than this are truncated before being sent to the model
    extraction_max_chars: int = 12000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    log_level: str = "INFO"

    # Auth - JWT or API key (at least one recommended for production)
    secret_key: str = ""  # for JWT signing; set SECRET_KEY in .env
    api_key_header: str = "X-API-Key"
    api_key: str = ""  # optional static API key; set API_KEY in .env
    api_key_user_id: Optional[int] = None  # when set, API key maps to this user
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Google OAuth for "Sign in with Google" (also grants Gmail read access)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: Optional[str] = None  # e.g. http://localhost:8000/api/auth/google/callback

    # Sync run
    sync_batch_size: int = 3
    sync_batch_pause_s: float = 1.0
    sync_status_ttl_s: int = 300
    sync_default_max_emails: int = 10
    sync_max_emails_limit: int = 50
    dedup_window_days: int = 7
    fingerprint_length: int = 32

    # Client poller
    poll_interval_s: float = 1.0
    poll_retry_interval_s: float = 2.0

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

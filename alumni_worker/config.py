"""Configuration settings for the alumni background worker."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis (queue store + idempotency cache)
    redis_url: str = "redis://localhost:6379"

    # Server
    port: int = 5000
    debug: bool = True
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # Platform backend API (entities are fetched by id from here)
    backend_url: str = "http://localhost:8000"
    service_token: str = ""  # Bearer token for service-to-service auth
    backend_timeout_seconds: float = 30.0

    # Worker pool
    worker_concurrency: int = 4
    # Comma-separated, highest priority first
    worker_queues: str = "webhook-processing,lead-routing,email-sending,crm-retry,default"
    poll_interval_seconds: float = 1.0
    default_task_timeout_seconds: float = 120.0
    default_max_attempts: int = 3
    # In-flight tasks not acked within timeout + grace are redelivered
    visibility_grace_seconds: int = 60

    # Idempotency guard
    idempotency_ttl_seconds: int = 3600  # 1h duplicate-send suppression
    idempotency_fail_open: bool = True  # Proceed if Redis is unavailable

    # Batches
    batch_failure_threshold: float = 1.0  # Ratio of failed items that fails the task
    batch_progress_every: int = 100

    # Retention
    task_ttl_seconds: int = 86400  # 24h
    dlq_ttl_seconds: int = 604800  # 7 days
    dlq_alert_threshold: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def queue_names(self) -> list[str]:
        """Queues serviced by this worker, in priority order."""
        return [q.strip() for q in self.worker_queues.split(",") if q.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()

from enum import Enum
from typing import Literal

from fastapi import Depends
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LockBackend(str, Enum):
    DATABASE = "database"
    MEMORY = "memory"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="genqueue", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=True, description="Debug mode")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    workers: int = Field(default=1, description="Number of workers")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./genqueue.db",
        description="Database connection URL",
    )
    db_pool_size: int = Field(default=10, description="Database connection pool size")
    db_max_overflow: int = Field(default=20, description="Database max overflow connections")
    db_pool_timeout: int = Field(default=30, description="Database pool timeout in seconds")
    db_pool_recycle: int = Field(default=3600, description="Database connection recycle time in seconds")
    db_echo: bool = Field(default=False, description="Echo SQL statements")

    # Job queue
    default_job_priority: int = Field(
        default=10, description="Priority for jobs queued without one (lower runs first)"
    )
    job_max_attempts: int = Field(default=3, ge=1, description="Attempts before a job fails")
    job_timeout_s: float = Field(default=300, gt=0, description="Wall-clock bound per handler call")
    job_backoff_base_s: float = Field(default=60, ge=0, description="Retry backoff base")
    job_max_backoff_s: float = Field(default=3600, ge=0, description="Retry backoff cap")
    job_backoff_jitter: float = Field(
        default=0.25, ge=0, le=1, description="Proportional jitter applied to retry backoff"
    )
    job_dedupe_window_s: int = Field(
        default=3600, ge=0, description="Window for duplicate job suppression, 0 disables"
    )
    job_retention_hours: int = Field(default=24, ge=1, description="Retention for finished jobs")
    stats_window_hours: int = Field(default=24, ge=1, description="Trailing window for statistics")

    # Scheduler
    max_concurrent_jobs: int = Field(default=3, ge=1, description="Jobs processed per tick")
    lock_ttl_s: int = Field(default=300, ge=1, description="Tick lock time-to-live")
    lock_backend: LockBackend = Field(
        default=LockBackend.DATABASE, description="Where tick locks live"
    )
    process_interval_s: int = Field(default=60, ge=1, description="Tick interval")
    cleanup_interval_s: int = Field(default=86400, ge=60, description="Cleanup interval")

    # Generation tasks
    batch_size: int = Field(default=50, ge=1, description="Items per batch")
    auto_batch_size: int = Field(default=20, ge=1, description="Items per batch for auto generation")
    task_max_retries: int = Field(default=3, ge=0, description="Task-level retries")
    task_timeout_s: int = Field(default=3600, ge=1, description="Processing time before timeout")
    task_ttl_s: int = Field(default=86400, ge=60, description="Lifetime of task records")
    task_cas_attempts: int = Field(
        default=5, ge=1, description="Reload-and-reapply attempts on version conflicts"
    )
    timeout_check_interval_s: int = Field(default=3600, ge=1, description="Timeout sweep interval")
    item_generator: str | None = Field(
        default=None,
        description="Import path ('package.module:attr') of the item generator factory",
    )

    # Polling queue
    polling_interval_s: int = Field(default=30, ge=1, description="Minimum gap between polls")
    polling_batch_size: int = Field(default=10, ge=1, description="Entries polled per run")
    polling_max_attempts: int = Field(default=20, ge=1, description="Polls before giving up")

    # Monitoring
    slow_operation_threshold_s: float = Field(
        default=5.0, gt=0, description="Timer spans above this are logged as slow"
    )

    def model_post_init(self, __context) -> None:
        """Validate settings after initialization."""
        if self.job_max_backoff_s < self.job_backoff_base_s:
            raise ValueError(
                "JOB_MAX_BACKOFF_S must be greater than or equal to JOB_BACKOFF_BASE_S"
            )
        if self.environment == "production" and self.lock_backend == LockBackend.MEMORY:
            raise ValueError(
                "LOCK_BACKEND=memory is not allowed in production environment. "
                "Use LOCK_BACKEND=database so ticks on separate hosts exclude each other."
            )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Dependency injection function for settings."""
    return settings


# Convenience type alias for dependency injection
SettingsDep = Depends(get_settings)

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FILEFORGE_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level for CLI commands")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///fileforge_dev.db")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Job records
    JOB_TTL_SECONDS: int = Field(
        default=86400, description="Job record TTL, reset on every write"
    )

    # Work queue
    JOB_MAX_ATTEMPTS_DEFAULT: int = Field(
        default=3, description="Attempts before a task is moved to the dead set"
    )
    JOB_RETRY_BACKOFF_SECONDS: float = Field(
        default=1.0, description="Base delay of the exponential retry backoff"
    )
    JOB_LEASE_TIMEOUT_SECONDS: int = Field(
        default=600,
        description="Lease lifetime without a heartbeat before the task is redelivered",
    )
    QUEUE_COMPLETED_RETENTION_SECONDS: int = Field(
        default=3600, description="How long completed tasks are kept"
    )
    QUEUE_DEAD_RETENTION_SECONDS: int = Field(
        default=86400, description="How long dead tasks are kept for audit"
    )

    # Worker pool
    WORKER_CONCURRENCY: int = Field(default=3, description="Simultaneous executions")
    WORKER_RATE_LIMIT_MAX: int = Field(
        default=10, description="Task starts allowed per rate limit window"
    )
    WORKER_RATE_LIMIT_WINDOW_SECONDS: float = Field(
        default=60.0, description="Rolling rate limit window"
    )
    WORKER_POLL_INTERVAL_SECONDS: float = Field(
        default=1.0, description="Idle sleep between queue polls"
    )
    MAINTENANCE_INTERVAL_SECONDS: float = Field(
        default=60.0,
        description="How often a worker pool prunes finished tasks, expired jobs and old events",
    )

    # Task events
    EVENT_RETENTION_SECONDS: int = Field(
        default=3600, description="How long outbox events are kept"
    )
    EVENT_RELAY_POLL_SECONDS: float = Field(
        default=0.5, description="How often the API process tails the event outbox"
    )
    EVENT_RELAY_ENABLED: bool = Field(
        default=True, description="Tail the outbox from the API process"
    )

    # File storage
    STORAGE_TYPE: str = Field(default="local", description="local|s3")
    LOCAL_STORAGE_PATH: str = Field(default="./data/storage")
    LOCAL_STORAGE_PUBLIC_URL_PREFIX: str = Field(
        default="http://localhost:7920/files"
    )
    STORAGE_SIGNING_SECRET: str = Field(
        default="fileforge-dev-secret-change-me",
        description="HMAC secret for local signed URLs; override in production",
    )
    DOWNLOAD_URL_TTL_SECONDS: int = Field(
        default=3600, description="Lifetime of result download URLs"
    )
    UPLOAD_MAX_BYTES: int = Field(
        default=104857600, description="Largest accepted upload (100MB)"
    )

    S3_BUCKET_NAME: str = Field(default="fileforge")
    S3_ENDPOINT_URL: str = Field(default="http://localhost:9000")
    S3_PUBLIC_ENDPOINT_URL: str = Field(
        default="",
        description="Public S3 endpoint used in presigned URLs; defaults to S3_ENDPOINT_URL",
    )
    S3_ACCESS_KEY_ID: str = Field(default="minioadmin")
    S3_SECRET_ACCESS_KEY: str = Field(default="minioadmin")
    S3_REGION_NAME: str = Field(default="us-east-1")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

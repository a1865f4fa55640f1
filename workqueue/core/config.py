"""
Work Queue Configuration

Configuration management with environment variable support.
Implements secure defaults and validation for all queue settings.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Queue settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_prefix="WORKQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(
        default="console", description="Log renderer: console or json"
    )

    # Queue layout
    QUEUE_PREFIX: str = Field(
        default="workqueue:queue",
        min_length=1,
        description="Key prefix for per-type queues and the dead letter queue",
    )

    # Task defaults
    DEFAULT_TIMEOUT_MS: int = Field(
        default=300000,
        ge=1,
        description="Advisory task timeout handed to handlers (5 minutes)",
    )
    MAX_RETRIES: int = Field(
        default=3, ge=0, le=20, description="Maximum retries for failed tasks"
    )
    DEAD_LETTER_ENABLED: bool = Field(
        default=True, description="Push exhausted tasks onto the dead letter queue"
    )

    # Retry backoff
    RETRY_BASE_DELAY_MS: int = Field(
        default=1000, ge=0, description="Base delay for exponential backoff"
    )
    RETRY_MAX_DELAY_MS: int = Field(
        default=30000, ge=0, description="Backoff delay cap"
    )

    # Results
    RESULT_TTL_SECONDS: int = Field(
        default=86400, ge=1, description="Task result TTL in seconds (24 hours)"
    )
    RESULT_CLEANUP_INTERVAL_MS: int = Field(
        default=60000, ge=10, description="Expired result sweep interval"
    )

    # Workers
    HEARTBEAT_INTERVAL_MS: int = Field(
        default=30000, ge=10, description="Worker heartbeat interval"
    )
    WORKER_STALE_AFTER_MS: int = Field(
        default=90000,
        ge=10,
        description="Heartbeat age after which a worker is considered stale",
    )
    POLL_INTERVAL_MS: int = Field(
        default=1000, ge=1, description="Idle wait when no task is available"
    )
    CONCURRENCY_WAIT_MS: int = Field(
        default=100, ge=1, description="Wait while the worker is at capacity"
    )
    LOOP_ERROR_BACKOFF_MS: int = Field(
        default=5000, ge=1, description="Wait after an error in the dispatch loop"
    )
    SHUTDOWN_GRACE_PERIOD_MS: int = Field(
        default=30000, ge=0, description="Wait for in-flight tasks on shutdown"
    )

    # Visibility timeout / lease reclamation
    VISIBILITY_TIMEOUT_MS: int = Field(
        default=60000, ge=1, description="Task processing lease duration"
    )
    LEASE_REAPER_ENABLED: bool = Field(
        default=False,
        description="Requeue processing tasks whose lease expired on a stale worker",
    )
    LEASE_REAPER_INTERVAL_MS: int = Field(
        default=15000, ge=10, description="Lease reaper sweep interval"
    )

    # Storage backend
    STORAGE_BACKEND: str = Field(
        default="memory", description="Storage backend: memory or redis"
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379", description="Redis connection URL"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=10, ge=1, le=50, description="Redis connection pool size"
    )
    REDIS_PASSWORD: Optional[str] = Field(
        default=None, description="Redis password"
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log renderer."""
        allowed = ["console", "json"]
        if v.lower() not in allowed:
            raise ValueError(f"LOG_FORMAT must be one of: {allowed}")
        return v.lower()

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def validate_storage_backend(cls, v):
        """Validate storage backend."""
        allowed = ["memory", "redis"]
        if v.lower() not in allowed:
            raise ValueError(f"STORAGE_BACKEND must be one of: {allowed}")
        return v.lower()

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must be a redis:// or rediss:// URL")
        return v

    # Alias properties for snake_case usage
    @property
    def queue_prefix(self) -> str:
        """Alias for QUEUE_PREFIX."""
        return self.QUEUE_PREFIX

    @property
    def max_retries(self) -> int:
        """Alias for MAX_RETRIES."""
        return self.MAX_RETRIES

    @property
    def result_ttl_seconds(self) -> int:
        """Alias for RESULT_TTL_SECONDS."""
        return self.RESULT_TTL_SECONDS


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Create global settings instance
settings = get_settings()

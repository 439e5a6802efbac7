from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from batch_engine.domain.retry import RetryPolicy

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BATCH_", env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Batch Engine"
    SQLALCHEMY_DATABASE_URI: str = "sqlite+aiosqlite:///./batch_engine.db"
    LOG_LEVEL: str = "INFO"

    # Dispatch
    WORKER_CONCURRENCY: int = 5
    POLL_INTERVAL_SECONDS: float = 0.5
    DEFAULT_CHUNK_SIZE: int = 100
    ITEM_CONCURRENCY: Optional[int] = None  # None = whole chunk at once
    ATTEMPT_TIMEOUT_SECONDS: Optional[float] = None

    # Retry policy
    DEFAULT_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 2.0
    RETRY_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    RETRY_JITTER: float = 0.0

    # Leases (visibility timeout)
    DEFAULT_LEASE_TIMEOUT_SECONDS: int = 60
    HEARTBEAT_INTERVAL_SECONDS: float = 10.0

    # Maintenance
    SCHEDULER_INTERVAL_SECONDS: float = 10.0
    CLEANUP_INTERVAL_SECONDS: float = 3600.0
    COMPLETED_RETENTION_DAYS: int = 7
    FAILED_RETENTION_DAYS: int = 30

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.RETRY_BASE_DELAY_SECONDS,
            multiplier=self.RETRY_MULTIPLIER,
            max_delay=self.RETRY_MAX_DELAY_SECONDS,
            jitter=self.RETRY_JITTER,
        )

settings = Settings()

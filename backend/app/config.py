"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # General
    APP_NAME: str = "Agent Task Orchestration Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Result store
    RESULT_STORE_BACKEND: str = "memory"  # memory or redis
    REDIS_URL: str = "redis://localhost:6379/0"
    KEY_PREFIX: str = "agentflow"

    # Task records
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_TASK_TTL: int = 3600  # 1 hour
    DEFAULT_PRIORITY: int = 2
    INTERMEDIATE_RESULT_TTL: int = 86400  # 24 hours
    WORKFLOW_TTL: int = 604800  # 7 days
    TASK_INDEX_MAX: int = 1000

    # Admission control
    RATE_LIMIT_MAX: int = 100
    RATE_LIMIT_WINDOW: int = 60  # seconds
    QUOTA_DEFAULT_LIMIT: int = -1  # for task types missing from the tier table
    QUOTA_USAGE_TTL: int = 2678400  # 31 days
    DEFAULT_TIER: str = "free"

    # Retry / recovery
    RETRY_BASE_DELAY: float = 2.0
    RETRY_MAX_DELAY: float = 300.0
    RETRY_JITTER: bool = True
    WORKFLOW_RECOVERY_DELAY: float = 5.0

    # Worker pools
    DEFAULT_CONCURRENCY: int = 5
    TASK_CONCURRENCY: dict[str, int] = {
        "ARCHITECT": 5,
        "DESIGN": 5,
        "CODE": 3,
        "ANALYZE": 3,
        "DEPLOY": 2,
        "EXPORT": 5,
    }

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    def concurrency_for(self, task_type: str, override: Optional[int] = None) -> int:
        """Resolve worker concurrency for a task type."""
        if override:
            return override
        return self.TASK_CONCURRENCY.get(task_type, self.DEFAULT_CONCURRENCY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()

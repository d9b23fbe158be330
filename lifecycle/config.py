"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "user-lifecycle"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Postgres (asyncpg URL)
    database_url: str = ""

    # Redis (Celery broker, dashboard cache, cross-process stage locks)
    redis_url: str = ""

    # Timezone used for calendar-day boundaries (streaks, heatmaps, daily check)
    default_timezone: str = "UTC"

    # Admin
    admin_api_key: str = ""

    # Stage engine
    stage_lock_timeout_seconds: float = 10.0

    # Analytics
    analytics_max_concurrency: int = 4
    analytics_timeout_seconds: Optional[float] = 60.0
    analytics_cache_ttl_seconds: int = 300

    # Integrations / daily check
    inactivity_return_days: int = 7
    daily_check_hour: int = 2

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

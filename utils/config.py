"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    api_base = settings.IIKO_API_BASE
    interval = settings.POLL_INTERVAL_SECONDS
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream ordering API
    IIKO_API_BASE: str = Field(default="https://api-ru.iiko.services")
    API_TIMEOUT: float = Field(default=10.0)

    # Poller Configuration
    POLL_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    INITIAL_REVISION_WINDOW_HOURS: float = Field(default=3.0, gt=0)

    # Database Configuration
    SQLITE_PATH: str = Field(default="/app/data/db/orders.db")

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_ORDERS: str = Field(default="orders")
    PUBLISH_ENABLED: bool = Field(default=True)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()

"""Configuration management for QAlloc."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QALLOC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    debug: bool = False

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./qalloc.db"

    # Logging
    log_level: str = "INFO"

    # Task settings
    capacity_page_size: int = 16
    ephemeral_tasks: bool = True
    callback_timeout_seconds: float = 10.0
    name_prefix: str = "mcm"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""Configuration management for the allocation engine."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RIGALLOC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Server settings
    host: str = "127.0.0.1"
    port: int = 3344
    debug: bool = False

    # Reference SQL store
    database_url: str = "sqlite+aiosqlite:///./rigalloc.db"

    # Logging
    log_level: str = "INFO"

    # Realtime sync
    debounce_ms: int = 300
    individual_debounce_ms: int = 150
    suppression_ttl_seconds: float = 2.0

    # Bulk operations
    batch_size: int = 10
    operation_history_limit: int = 100
    audit_limit: int = 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Freshness
    cache_min_ttl_seconds: int = 3600
    # Entries older than this are pruned entirely
    cache_max_age_seconds: int = 7200
    # Only update the in-memory index once the durable write succeeded
    cache_strict_persistence: bool = False

    # Retry / backoff
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0

    # Client profiles
    request_timeout_seconds: float = 30.0
    fallback_timeout_seconds: float = 60.0
    user_agent: str = "PodCache/1.0"
    fallback_user_agent: str = (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"
    )

    # Refresh concurrency
    refresh_workers: int = 4
    # Unset: long enough for the whole retry chain to run out
    coalesce_timeout_seconds: Optional[float] = None

    # Storage
    storage_backend: str = "sqlite"  # sqlite, file, memory
    database_url: str = "sqlite:///./podcache.db"
    cache_directory: Path = Path("./cache")
    legacy_cache_directory: Optional[Path] = None
    legacy_cache_key: str = "episodeCacheData"

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

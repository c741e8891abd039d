"""Configuration settings for couplehabits."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from the environment (COUPLEHABITS_*) and .env."""

    model_config = SettingsConfigDict(
        env_prefix="COUPLEHABITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None  # anon / publishable key
    realtime_channel: str = "db-changes"

    # Local store
    db_path: Optional[Path] = None  # Default: <home>/couplehabits.db

    log_level: str = "WARNING"

    @property
    def has_remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

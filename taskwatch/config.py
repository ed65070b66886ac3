"""Configuration settings for taskwatch."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskwatch.types import HISTORY_LIMIT, PUSH_DEBOUNCE_MS, SYNC_WINDOW_DAYS
from taskwatch.utils import get_taskwatch_home


class Settings(BaseSettings):
    """Settings loaded from ``TASKWATCH_*`` environment variables."""

    # Supabase
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None  # publishable/anon key
    # Optional stored session, restored on startup
    supabase_access_token: Optional[str] = None
    supabase_refresh_token: Optional[str] = None

    # Local storage
    data_dir: Path = Field(default_factory=get_taskwatch_home)

    # Sync
    history_limit: int = Field(default=HISTORY_LIMIT, ge=1)
    sync_window_days: int = Field(default=SYNC_WINDOW_DAYS, ge=1)
    push_debounce_ms: int = Field(default=PUSH_DEBOUNCE_MS, ge=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TASKWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

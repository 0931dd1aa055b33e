"""
Configuration settings for the offline sync engine.

Uses environment variables (prefix ``OFFLINE_SYNC_``) with sensible defaults
for local development.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Priority


class SyncSettings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OFFLINE_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote API
    api_base_url: str = "http://localhost:8000"
    api_prefix: str = "/api"
    api_timeout: float = Field(default=30.0, gt=0)

    # Connectivity probe
    health_path: str = "/api/health"
    probe_timeout: float = Field(default=5.0, gt=0)

    # Sync scheduling (seconds)
    periodic_sync_interval: float = Field(default=300.0, gt=0)  # every 5 minutes
    immediate_drain_debounce: float = Field(default=1.0, ge=0)

    # Task queue
    default_max_retries: int = Field(default=3, ge=0)
    default_priority: Priority = Priority.MEDIUM
    retry_delays: list[float] = Field(default=[1.0, 5.0, 15.0, 30.0, 60.0])
    background_sync_available: bool = False

    # Response cache
    cache_janitor_interval: float = Field(default=3600.0, gt=0)

    # Local persistence
    storage_path: Path = Field(
        default_factory=lambda: Path.home() / ".offline_sync" / "offline_sync.db"
    )

    # Conflict resolution
    client_authoritative_fields: list[str] = Field(
        default=["userPreferences", "localNotes"]
    )

    @field_validator("retry_delays", mode="before")
    @classmethod
    def parse_delays(cls, v):
        """Parse comma-separated delays string to list."""
        if isinstance(v, str):
            return [float(d.strip()) for d in v.split(",") if d.strip()]
        return v

    @field_validator("retry_delays")
    @classmethod
    def non_negative_delays(cls, v: list[float]) -> list[float]:
        if any(d < 0 for d in v):
            raise ValueError("retry delays must be non-negative")
        return v

    @field_validator("client_authoritative_fields", mode="before")
    @classmethod
    def parse_fields(cls, v):
        """Parse comma-separated field names to list."""
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()

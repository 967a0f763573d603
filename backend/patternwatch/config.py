"""
Patternwatch: Configuration Management

Pydantic Settings: loads from .env / PATTERNWATCH_* environment variables.
These are engine-wide capacities; per-instance indicator parameters live in
``patternwatch.models.PatternParams``.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PATTERNWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"

    # ── Pattern engine buffers ──
    pivot_history_size: int = Field(default=50, ge=5)
    confirmed_history_size: int = Field(default=50, ge=1)

    # ── Visualization ──
    recent_confirmed_to_draw: int = Field(default=5, ge=0)

    # ── Instance manager ──
    instance_history_size: int = Field(default=5000, ge=1)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance, created once and reused everywhere."""
    return Settings()

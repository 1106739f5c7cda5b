"""Application configuration."""
from functools import lru_cache
import logging
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Credify"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/credify.db"

    # Catalog
    base_dir: Path = Path(__file__).parent
    configs_dir: Path = base_dir / "configs" / "cards"
    catalog_cache_ttl_seconds: int = 300

    # Redemption tracking
    rollback_on_write_failure: bool = False
    reset_date_horizon_days: int = 4 * 366
    expiring_soon_days: int = 7
    insights_months: int = 6
    max_cached_trackers: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Fail closed on unknown level names instead of silently logging at WARNING."""
        normalized = value.strip().upper()
        if normalized not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL must be a logging level name, got {value!r}.")
        return normalized

    @field_validator("catalog_cache_ttl_seconds", "reset_date_horizon_days", "insights_months", "max_cached_trackers")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

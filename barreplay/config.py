"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BARREPLAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="structlog renderer: json for pipelines, console for terminals",
    )

    # Strategy defaults
    default_strategy: str = Field(
        default="red_candle_high_break",
        description="Strategy id used when none is given on the command line",
    )
    volatility_threshold: float = Field(
        default=7.0,
        description="Directional range (points) that marks a bar as volatile "
        "for the red_green_flexible strategy",
    )

    # Default run parameters (see Parameters.from_dict for the full set)
    default_initial_stop_mode: str = Field(
        default="reference_low", description="Initial stop placement mode"
    )
    default_time_exit: Optional[str] = Field(
        default=None, description="Default time-exit cutoff (HH:MM), unset = none"
    )
    session_timezone: Optional[str] = Field(
        default=None,
        description="IANA zone for time-exit comparison (default: bar's own offset)",
    )

    # Loader limits
    max_file_size_mb: int = Field(default=25, description="Max CSV size in MB")
    max_rows: int = Field(default=2_000_000, description="Max CSV data rows")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

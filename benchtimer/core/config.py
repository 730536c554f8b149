from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Environment-driven application configuration."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "Bench Timer"
    BASE_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parent.parent.parent)
    DATA_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parent.parent.parent / "data")
    TZ: str = "America/Chicago"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    API_KEY: str = Field(default="", validation_alias=AliasChoices("API_KEY", "API_TOKEN"))

    DB_URL: str = Field(default="", validation_alias=AliasChoices("DATABASE_URL", "DB_URL"))

    HOST: str = "0.0.0.0"
    PORT: int = 8089

    # Labor rate applied to committed minutes in ticket summaries.
    HOURLY_RATE: Decimal = Decimal("60.00")
    # Server flags older than this are reported as stale in the admin view.
    STALE_TIMER_HOURS: int = 24

    @property
    def local_state_dir(self) -> Path:
        return self.DATA_DIR / "local_state"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, value: object) -> str:
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()

    @field_validator("STALE_TIMER_HOURS")
    @classmethod
    def positive_hours(cls, value: int) -> int:
        if value < 1:
            raise ValueError("STALE_TIMER_HOURS must be at least 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    settings = AppSettings()
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    if not settings.DB_URL:
        settings.DB_URL = f"sqlite:///{settings.DATA_DIR / 'data.db'}"
    return settings


settings = get_settings()

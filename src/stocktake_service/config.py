"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the server and the device queue."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="Stocktake Reconciliation Service",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./stocktake.db",
        description="SQLAlchemy compatible database URL for the server store.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    access_control_allow_origin: str = Field(
        default="*",
        description="Allowed CORS origins for the API, comma separated.",
    )
    log_level: str = Field(default="INFO", description="Root log level.")
    log_file: str | None = Field(
        default=None,
        description="Optional path of a rotating log file.",
    )
    local_store_url: str = Field(
        default="sqlite+aiosqlite:///./stocktake-device.db",
        description="Database URL of the device-local offline queue.",
    )
    server_url: str = Field(
        default="http://localhost:8000",
        description="Base URL the offline queue drains to.",
    )
    sync_batch_size: int = Field(default=200, ge=1)
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    sync_timeout_seconds: float = Field(default=30.0, gt=0)
    fuzzy_matching_enabled: bool = Field(
        default=True,
        description="Allow substring matching of product names as a last resort.",
    )

    @field_validator("database_url", "local_store_url")
    @classmethod
    def _validate_sqlite_path(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_REFRESH_INTERVAL_SECONDS = 60 * 60


def default_data_root() -> Path:
    """Return runtime data root, preferring /data with local fallback."""
    configured = os.getenv("ICAL_API_DATA_ROOT")
    if configured:
        return Path(configured)

    data_root = Path("/data")
    if data_root.exists() and os.access(data_root, os.W_OK):
        return data_root
    return Path("data")


def parse_interval_expression(value: object) -> int:
    """Evaluate an interval such as ``3600`` or ``60*60`` without ``eval``."""
    if isinstance(value, bool):
        raise ValueError("refresh interval must be a number of seconds")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value or "").strip()
    if not text:
        raise ValueError("refresh interval is empty")
    total = 1
    for factor in text.split("*"):
        factor = factor.strip()
        if not factor.isdigit():
            raise ValueError(f"Unsupported refresh interval expression: {text!r}")
        total *= int(factor)
    return total


class AppSettings(BaseSettings):
    """Runtime settings for the feed ingester and the query API."""

    host: str = "0.0.0.0"
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("ICAL_API_PORT", "PORT"),
    )
    data_root: Path = Field(default_factory=default_data_root)
    db_path: Path | None = None
    links_path: Path = Path("links.txt")
    sqlite_busy_timeout_ms: int = Field(default=30000, ge=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    refresh_interval_seconds: int = Field(
        default=_DEFAULT_REFRESH_INTERVAL_SECONDS,
        ge=1,
        validation_alias=AliasChoices(
            "ICAL_API_REFRESH_INTERVAL_SECONDS",
            "REFRESH_INTERVAL_SECONDS",
        ),
    )
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    fetch_max_bytes: int = Field(default=20 * 1024 * 1024, ge=1)
    fetch_max_redirects: int = Field(default=5, ge=0)
    fetch_attempts: int = Field(default=2, ge=1, le=10)
    fetch_retry_wait_seconds: float = Field(default=1.0, ge=0)

    # The upstream feeds are skewed by a fixed hour regardless of DST.
    source_offset_seconds: int = 3600

    regex_max_pattern_length: int = Field(default=256, ge=1)
    regex_max_value_length: int = Field(default=10000, ge=1)
    regex_time_budget_seconds: float = Field(default=2.0, gt=0)

    calendar_name: str = "ADECal"
    calendar_prod_id: str = "-//ADE/version 6.0"
    calendar_uid_domain: str = "ical-api"

    @field_validator("refresh_interval_seconds", mode="before")
    @classmethod
    def _evaluate_refresh_interval(cls, value: object) -> int:
        return parse_interval_expression(value)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _derive_db_path(self) -> "AppSettings":
        if self.db_path is None:
            self.db_path = self.data_root / "db" / "events.db"
        return self

    class Config:
        env_prefix = "ICAL_API_"
        env_file = ".server.env"
        extra = "ignore"
        populate_by_name = True


__all__ = ["AppSettings", "default_data_root", "parse_interval_expression"]

"""Ledger configuration using Pydantic Settings.

Values come from (highest priority first) constructor arguments,
RRL_-prefixed environment variables, and an optional .env file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .numeric import U128_MAX

# Largest value a SQLite INTEGER primary key can hold.
SQLITE_MAX_INTEGER = 2**63 - 1


class LedgerSettings(BaseSettings):
    """Tunable limits and reward parameters for one ledger instance."""

    model_config = SettingsConfigDict(
        env_prefix="RRL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=False,
    )

    db_path: str = ":memory:"
    host_key_path: Optional[str] = None

    # Rewards
    reviewer_reward_amount: int = Field(default=1_000_000, ge=1, le=U128_MAX)
    loyalty_reward_amount: int = Field(default=500_000, ge=1, le=U128_MAX)
    reviewer_reward_min_reviews: int = Field(default=3, ge=1)
    loyalty_min_visits: int = Field(default=2, ge=0)
    loyalty_reward_interval: int = Field(default=5, ge=1)

    # Id counters stop allocating once the next id reaches this value.
    counter_ceiling: int = Field(default=SQLITE_MAX_INTEGER, ge=1)

    # Text bounds
    max_name_length: int = Field(default=100, ge=1)
    max_cuisine_length: int = Field(default=50, ge=1)
    max_location_length: int = Field(default=100, ge=1)
    max_comment_length: int = Field(default=500, ge=1)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    @model_validator(mode="after")
    def validate_ceiling(self) -> "LedgerSettings":
        if self.counter_ceiling > SQLITE_MAX_INTEGER:
            raise ValueError(
                f"counter_ceiling must not exceed {SQLITE_MAX_INTEGER} "
                f"(ids are stored as SQLite INTEGER keys)"
            )
        return self


@lru_cache
def get_settings() -> LedgerSettings:
    """Get cached settings instance."""
    return LedgerSettings()

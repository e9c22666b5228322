"""
Runtime tunables, read from the environment or a .env file.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOINSTR_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    log_level: str = "INFO"

    # Electrum
    electrum_timeout: float = Field(default=30.0, gt=0)

    # Relay
    relay_connect_timeout: float = Field(default=10.0, gt=0)
    relay_ack_timeout: float = Field(default=10.0, gt=0)

    # Directory lookups done on behalf of join_coinjoin
    pool_lookback: int = Field(default=3600, ge=0)
    pool_lookup_timeout: float = Field(default=5.0, ge=0)

    # Round
    credentials_timeout: float = Field(default=60.0, gt=0)
    min_delay: float = Field(default=0.2, ge=0)
    max_delay: float = Field(default=5.0, ge=0)
    poll_interval: float = Field(default=0.5, gt=0)

    # Default coin scan range when the input selector is empty
    scan_index_min: int = Field(default=0, ge=0)
    scan_index_max: int = Field(default=20, ge=0)


def get_settings() -> Settings:
    return Settings()

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, read from IDENTITY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IDENTITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = Field(default="Bitespeed Contact Reconciliation API")
    service_version: str = Field(default="1.1.0")

    db_path: str = Field(default="contacts.db", description="SQLite database file")
    db_timeout_seconds: float = Field(
        default=30.0,
        description="How long a request waits for the store's write lock",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")


@lru_cache
def get_settings() -> Settings:
    return Settings()

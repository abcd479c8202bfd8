"""Runtime settings read from the environment."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

__all__ = ["Settings", "load_settings", "normalize_database_url"]


class Settings(BaseModel):
    database_url: str | None = None
    source_database_url: str | None = None
    sample_size: int = Field(default=10, ge=0)
    max_workers: int = Field(default=1, ge=1)
    log_level: str = "WARNING"


def normalize_database_url(database_url: str) -> str:
    """Route bare postgresql:// URLs to the psycopg (v3) driver."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg://", 1)
    return database_url


def load_settings() -> Settings:
    """Create settings from environment variables."""
    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        source_database_url=os.getenv("SOURCE_DATABASE_URL") or None,
        sample_size=int(os.getenv("RECON_SAMPLE_SIZE", "10")),
        max_workers=int(os.getenv("RECON_MAX_WORKERS", "1")),
        log_level=os.getenv("RECON_LOG_LEVEL", "WARNING").upper(),
    )

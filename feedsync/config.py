"""Application configuration management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/feedsync.db"

    # Encryption (OAuth tokens at rest)
    encryption_key_file: str = "/secrets/encryption.key"

    # Logging
    log_level: str = "info"

    # Sync window
    sync_window_past_days: int = 30
    sync_window_future_days: int = 366

    # Source fetch
    ics_fetch_timeout_seconds: float = 12.0
    fetch_retries: int = 2
    fetch_retry_delay_seconds: float = 0.8
    ics_user_agent: str = "FeedSync-CalendarSync/1.0"

    # Google Calendar
    google_page_size: int = 250
    google_request_timeout_seconds: int = 30
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    # Reconciliation
    upsert_chunk_size: int = 500
    delete_chunk_size: int = 500

    # Scheduling
    sync_interval_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_encryption_key() -> bytes:
    """Load the token encryption key from file."""
    settings = get_settings()
    key_file = settings.encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Binary keys may legitimately contain whitespace bytes; only drop editor newlines
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key

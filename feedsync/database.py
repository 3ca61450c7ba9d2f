"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from feedsync.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Configured external calendar sources
CREATE TABLE IF NOT EXISTS calendar_feeds (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL,
    organization_id TEXT,
    scope TEXT NOT NULL DEFAULT 'personal',
    provider TEXT NOT NULL DEFAULT 'ics',
    feed_url TEXT,
    google_calendar_id TEXT,
    connected_user_id INTEGER,
    status TEXT NOT NULL DEFAULT 'active',
    last_synced_at TIMESTAMP,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_calendar_feeds_status ON calendar_feeds(status);

-- Concrete occurrences materialized from feeds
CREATE TABLE IF NOT EXISTS calendar_events (
    id INTEGER PRIMARY KEY,
    feed_id INTEGER NOT NULL REFERENCES calendar_feeds(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    organization_id TEXT,
    scope TEXT,
    external_uid TEXT NOT NULL,
    instance_key TEXT NOT NULL,
    title TEXT,
    description TEXT,
    location TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP,
    all_day BOOLEAN DEFAULT FALSE,
    raw TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(feed_id, instance_key)
);

CREATE INDEX IF NOT EXISTS idx_calendar_events_window
    ON calendar_events(feed_id, start_at);

-- OAuth tokens for Google-connected users (encrypted at rest)
CREATE TABLE IF NOT EXISTS oauth_tokens (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL UNIQUE,
    google_account_email TEXT,
    access_token_encrypted BLOB NOT NULL,
    refresh_token_encrypted BLOB NOT NULL,
    token_expiry TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

-- Organization membership, consulted for org-scoped Google feeds
CREATE TABLE IF NOT EXISTS user_organization_roles (
    user_id INTEGER NOT NULL,
    organization_id TEXT NOT NULL,
    role TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    PRIMARY KEY (user_id, organization_id)
);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


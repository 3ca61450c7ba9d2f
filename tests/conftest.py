"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_feedsync_encryption.key"
os.environ["FETCH_RETRY_DELAY_SECONDS"] = "0"


@pytest.fixture(scope="function")
def test_encryption_key():
    """Install a fresh token cipher for the test."""
    from feedsync.encryption import generate_encryption_key, init_token_cipher
    import feedsync.encryption as encryption_module

    key = generate_encryption_key()
    init_token_cipher(key)

    yield key

    encryption_module._token_cipher = None


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from feedsync.database import get_database, close_database
    import feedsync.database as db_module
    import feedsync.sync.store as store_module

    # Reset the global connection and the store bound to it
    db_module._db_connection = None
    store_module._store = None

    # Create in-memory database (schema is applied on connect)
    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None
    store_module._store = None


@pytest_asyncio.fixture
async def store(test_db):
    """Event store bound to the test database."""
    from feedsync.sync.store import get_event_store

    return await get_event_store()


@pytest.fixture
def window():
    """Four-week window covering March 2026."""
    from feedsync.sync.window import SyncWindow

    return SyncWindow(
        start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        end=datetime(2026, 3, 29, tzinfo=timezone.utc),
    )


def _build_ics(*events: str) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//FeedSync Tests//EN"]
    for event in events:
        lines.append("BEGIN:VEVENT")
        lines.extend(line.strip() for line in event.strip().splitlines())
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture
def build_ics():
    """Wrap VEVENT bodies in a minimal VCALENDAR document."""
    return _build_ics

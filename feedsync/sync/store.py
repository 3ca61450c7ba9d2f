"""Event store: the persistence operations the sync pipeline relies on."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from feedsync.database import get_database
from feedsync.errors import SchemaMismatchError, StoreFailure
from feedsync.sync.models import Feed, FeedStatus, format_instant
from feedsync.sync.window import SyncWindow

logger = logging.getLogger(__name__)

EVENTS_TABLE = "calendar_events"
FEEDS_TABLE = "calendar_feeds"

# Conflict target for instance upserts; never rewritten on update
EVENT_CONFLICT_COLUMNS = ("feed_id", "instance_key")

FEED_INSERT_COLUMNS = frozenset({
    "user_id", "organization_id", "scope", "provider", "feed_url",
    "google_calendar_id", "connected_user_id",
})


def _now() -> str:
    return format_instant(datetime.now(timezone.utc))


class EventStore:
    """
    aiosqlite-backed store for feeds and their materialized instances.

    Column sets are read once per connection (PRAGMA table_info) and used to
    reject writes that reference columns the live schema lacks.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._columns: dict[str, frozenset[str]] = {}

    @asynccontextmanager
    async def _operation(self, action: str):
        try:
            yield
        except aiosqlite.Error as e:
            await self.db.rollback()
            raise StoreFailure(f"{action} failed: {e}") from e

    async def table_columns(self, table: str) -> frozenset[str]:
        """Return (and cache) the column names of a table."""
        if table not in self._columns:
            async with self._operation(f"Reading columns of {table}"):
                cursor = await self.db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
            self._columns[table] = frozenset(row[1] for row in rows)
        return self._columns[table]

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    async def get_feed(self, feed_id: int) -> Optional[Feed]:
        async with self._operation(f"Loading feed {feed_id}"):
            cursor = await self.db.execute(
                f"SELECT * FROM {FEEDS_TABLE} WHERE id = ?", (feed_id,)
            )
            row = await cursor.fetchone()
        return Feed.from_row(row) if row else None

    async def list_syncable_feeds(self) -> list[Feed]:
        """All feeds except disconnected ones, oldest first."""
        async with self._operation("Listing feeds"):
            cursor = await self.db.execute(
                f"SELECT * FROM {FEEDS_TABLE} WHERE status != ? ORDER BY id",
                (FeedStatus.DISABLED.value,),
            )
            rows = await cursor.fetchall()
        return [Feed.from_row(row) for row in rows]

    async def insert_feed(self, **fields: Any) -> Feed:
        unknown = set(fields) - FEED_INSERT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown feed fields: {', '.join(sorted(unknown))}")

        columns = list(fields) + ["updated_at"]
        values = list(fields.values()) + [_now()]
        placeholders = ", ".join("?" for _ in columns)

        async with self._operation("Inserting feed"):
            cursor = await self.db.execute(
                f"""INSERT INTO {FEEDS_TABLE} ({', '.join(columns)})
                    VALUES ({placeholders}) RETURNING id""",
                values,
            )
            row = await cursor.fetchone()
            await self.db.commit()

        return await self.get_feed(row["id"])

    async def mark_feed_active(self, feed_id: int, synced_at: str) -> bool:
        """Record a successful run. Disabled feeds are left untouched."""
        async with self._operation(f"Updating feed {feed_id}"):
            cursor = await self.db.execute(
                f"""UPDATE {FEEDS_TABLE} SET
                    status = ?, last_synced_at = ?, last_error = NULL, updated_at = ?
                    WHERE id = ? AND status != ?""",
                (FeedStatus.ACTIVE.value, synced_at, _now(), feed_id, FeedStatus.DISABLED.value),
            )
            await self.db.commit()
        return cursor.rowcount > 0

    async def mark_feed_error(self, feed_id: int, message: str) -> bool:
        """Record a failed run, keeping last_synced_at. Disabled feeds are left untouched."""
        async with self._operation(f"Updating feed {feed_id}"):
            cursor = await self.db.execute(
                f"""UPDATE {FEEDS_TABLE} SET
                    status = ?, last_error = ?, updated_at = ?
                    WHERE id = ? AND status != ?""",
                (FeedStatus.ERROR.value, message, _now(), feed_id, FeedStatus.DISABLED.value),
            )
            await self.db.commit()
        return cursor.rowcount > 0

    async def mark_feed_disabled(self, feed_id: int) -> bool:
        async with self._operation(f"Disabling feed {feed_id}"):
            cursor = await self.db.execute(
                f"""UPDATE {FEEDS_TABLE} SET
                    status = ?, last_error = NULL, updated_at = ?
                    WHERE id = ?""",
                (FeedStatus.DISABLED.value, _now(), feed_id),
            )
            await self.db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def upsert_events(self, rows: list[dict]) -> None:
        """
        Insert or fully replace instance rows keyed by (feed_id, instance_key).

        All rows must share the same keys. Raises SchemaMismatchError, before
        touching the table, when a key is not a column of the live schema.
        """
        if not rows:
            return

        columns = list(rows[0])
        missing = set(columns) - await self.table_columns(EVENTS_TABLE)
        if missing:
            raise SchemaMismatchError(EVENTS_TABLE, missing)

        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in columns
            if column not in EVENT_CONFLICT_COLUMNS
        )
        sql = (
            f"INSERT INTO {EVENTS_TABLE} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({', '.join(EVENT_CONFLICT_COLUMNS)}) DO UPDATE SET {updates}"
        )
        params = [
            tuple(
                json.dumps(row[column]) if column == "raw" and row[column] is not None else row[column]
                for column in columns
            )
            for row in rows
        ]

        async with self._operation(f"Upserting {len(rows)} instances"):
            await self.db.executemany(sql, params)
            await self.db.commit()

    async def list_events_in_window(self, feed_id: int, window: SyncWindow) -> list[dict]:
        """Return id and instance_key of stored instances starting inside the window."""
        async with self._operation(f"Reading instances of feed {feed_id}"):
            cursor = await self.db.execute(
                f"""SELECT id, instance_key FROM {EVENTS_TABLE}
                    WHERE feed_id = ? AND start_at >= ? AND start_at < ?""",
                (feed_id, format_instant(window.start), format_instant(window.end)),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def list_events(self, feed_id: int) -> list[dict]:
        """All stored instances of a feed ordered by start."""
        async with self._operation(f"Reading instances of feed {feed_id}"):
            cursor = await self.db.execute(
                f"SELECT * FROM {EVENTS_TABLE} WHERE feed_id = ? ORDER BY start_at, instance_key",
                (feed_id,),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def delete_events(self, event_ids: list[int]) -> int:
        if not event_ids:
            return 0
        placeholders = ", ".join("?" for _ in event_ids)
        async with self._operation(f"Deleting {len(event_ids)} instances"):
            cursor = await self.db.execute(
                f"DELETE FROM {EVENTS_TABLE} WHERE id IN ({placeholders})",
                event_ids,
            )
            await self.db.commit()
        return cursor.rowcount

    async def delete_feed_events(self, feed_id: int) -> int:
        async with self._operation(f"Deleting instances of feed {feed_id}"):
            cursor = await self.db.execute(
                f"DELETE FROM {EVENTS_TABLE} WHERE feed_id = ?", (feed_id,)
            )
            await self.db.commit()
        return cursor.rowcount


_store: Optional[EventStore] = None


async def get_event_store() -> EventStore:
    """Get the store bound to the current global connection."""
    global _store
    db = await get_database()
    if _store is None or _store.db is not db:
        _store = EventStore(db)
    return _store

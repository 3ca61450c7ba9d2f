"""Reconcile produced instances against the event store.

A run first upserts everything it produced, then deletes stored instances
inside the window that the run did not produce. The delete therefore always
observes the run's own writes. Two concurrent runs of the same feed are not
safe against each other; callers must serialize them per feed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional, Sequence

from feedsync.config import get_settings
from feedsync.errors import SchemaMismatchError
from feedsync.sync.models import CalendarEventInstance, Feed, FeedScope, format_instant
from feedsync.sync.store import EventStore, get_event_store
from feedsync.sync.window import SyncWindow

logger = logging.getLogger(__name__)

# Columns written when the schema has them; older schemas lack them
OPTIONAL_EVENT_COLUMNS = frozenset({"organization_id", "scope"})


@dataclass
class ReconcileContext:
    """Per-run state threaded through reconciliation. Never shared between runs."""

    include_optional_columns: bool = True
    degraded: bool = False


@dataclass(frozen=True)
class ReconcileOutcome:
    upserted: int
    deleted: int
    degraded: bool = False


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def build_event_row(
    feed: Feed,
    instance: CalendarEventInstance,
    include_optional_columns: bool,
    updated_at: str,
) -> dict:
    """Full row for one instance. Every field is written so cleared values propagate."""
    row = {
        "feed_id": feed.id,
        "instance_key": instance.instance_key,
        "user_id": feed.user_id,
        "external_uid": instance.external_uid,
        "title": instance.title,
        "description": instance.description,
        "location": instance.location,
        "start_at": instance.start_at,
        "end_at": instance.end_at,
        "all_day": instance.all_day,
        "raw": instance.raw,
        "updated_at": updated_at,
    }
    if include_optional_columns:
        row["organization_id"] = feed.organization_id
        row["scope"] = feed.scope or FeedScope.PERSONAL.value
    return row


async def upsert_instances(
    store: EventStore,
    feed: Feed,
    instances: Sequence[CalendarEventInstance],
    context: ReconcileContext,
    chunk_size: Optional[int] = None,
) -> int:
    """
    Upsert instances in fixed-size chunks.

    A chunk rejected only for optional columns is retried without them, and
    the context remembers it so later chunks skip those columns directly.
    """
    chunk_size = chunk_size or get_settings().upsert_chunk_size
    updated_at = format_instant(datetime.now(timezone.utc))

    for chunk in _chunks(instances, chunk_size):
        rows = [
            build_event_row(feed, instance, context.include_optional_columns, updated_at)
            for instance in chunk
        ]
        try:
            await store.upsert_events(rows)
        except SchemaMismatchError as e:
            if not context.include_optional_columns or not e.missing_columns <= OPTIONAL_EVENT_COLUMNS:
                raise
            logger.warning(
                f"Feed {feed.id}: event table lacks {sorted(e.missing_columns)}, "
                "upserting without optional columns"
            )
            context.include_optional_columns = False
            context.degraded = True
            await store.upsert_events([
                build_event_row(feed, instance, False, updated_at) for instance in chunk
            ])

    return len(instances)


async def delete_stale_instances(
    store: EventStore,
    feed: Feed,
    window: SyncWindow,
    keep_keys: set[str],
    chunk_size: Optional[int] = None,
) -> int:
    """Delete stored instances inside the window whose key is not in keep_keys."""
    chunk_size = chunk_size or get_settings().delete_chunk_size

    existing = await store.list_events_in_window(feed.id, window)
    stale_ids = [row["id"] for row in existing if row["instance_key"] not in keep_keys]

    deleted = 0
    for chunk in _chunks(stale_ids, chunk_size):
        deleted += await store.delete_events(list(chunk))

    return deleted


async def reconcile_instances(
    feed: Feed,
    instances: Sequence[CalendarEventInstance],
    window: SyncWindow,
    store: Optional[EventStore] = None,
) -> ReconcileOutcome:
    """Upsert a run's instances, then delete the stale ones inside the window."""
    store = store or await get_event_store()
    context = ReconcileContext()

    upserted = await upsert_instances(store, feed, instances, context)
    keep_keys = {instance.instance_key for instance in instances}
    deleted = await delete_stale_instances(store, feed, window, keep_keys)

    logger.info(f"Feed {feed.id} reconciled: {upserted} upserted, {deleted} deleted")
    return ReconcileOutcome(upserted=upserted, deleted=deleted, degraded=context.degraded)

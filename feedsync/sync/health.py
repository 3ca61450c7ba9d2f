"""Feed health state: active, error, disabled.

Runs move a feed between active and error. Only an explicit disconnect
produces disabled, and run outcomes never overwrite it.
"""

import logging
from typing import Optional

from feedsync.sync.models import Feed, FeedStatus, SyncResult
from feedsync.sync.store import EventStore, get_event_store

logger = logging.getLogger(__name__)


async def mark_feed_active(
    feed: Feed,
    synced_at: str,
    upserted: int,
    deleted: int,
    store: Optional[EventStore] = None,
) -> SyncResult:
    """Stamp a successful run: status active, last_synced_at = run start, error cleared."""
    store = store or await get_event_store()
    if not await store.mark_feed_active(feed.id, synced_at):
        # Disconnected mid-run: the run's writes must not outlive the disconnect
        removed = await store.delete_feed_events(feed.id)
        logger.warning(
            f"Feed {feed.id} was disconnected or removed during sync, discarded {removed} instances"
        )
        return SyncResult(status=FeedStatus.DISABLED.value, last_synced_at=feed.last_synced_at)

    return SyncResult(
        status=FeedStatus.ACTIVE.value,
        last_synced_at=synced_at,
        last_error=None,
        upserted=upserted,
        deleted=deleted,
    )


async def mark_feed_error(
    feed: Feed,
    message: str,
    store: Optional[EventStore] = None,
) -> SyncResult:
    """
    Record a failed run. last_synced_at keeps its prior value so "never
    synced" stays distinguishable from "failing after a prior success".

    Persisting can itself fail; that is logged and the error result is still
    returned so nothing escapes a sync run.
    """
    try:
        store = store or await get_event_store()
        await store.mark_feed_error(feed.id, message)
    except Exception as e:
        logger.exception(f"Could not record error state for feed {feed.id}: {e}")

    return SyncResult(
        status=FeedStatus.ERROR.value,
        last_synced_at=feed.last_synced_at,
        last_error=message,
        upserted=0,
        deleted=0,
    )


async def disconnect_feed(feed_id: int, store: Optional[EventStore] = None) -> bool:
    """
    Disconnect a feed: status disabled and its mirrored instances removed.

    Returns False if the feed does not exist.
    """
    store = store or await get_event_store()
    if not await store.mark_feed_disabled(feed_id):
        logger.warning(f"Feed {feed_id} not found, nothing to disconnect")
        return False

    removed = await store.delete_feed_events(feed_id)
    logger.info(f"Feed {feed_id} disconnected, removed {removed} instances")
    return True

"""Sync triggers: per-feed single-flight runs and the periodic sweep.

The engine does not serialize runs of the same feed; these triggers do.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from feedsync.database import get_database
from feedsync.sync.models import SyncResult
from feedsync.utils.tasks import create_background_task

logger = logging.getLogger(__name__)

PERIODIC_SYNC_JOB = "periodic_sync"

# Per-feed locks so a manual trigger never overlaps a scheduled run of the same feed
_feed_locks: dict[int, asyncio.Lock] = {}
_feed_locks_guard = asyncio.Lock()


async def _get_feed_lock(feed_id: int) -> asyncio.Lock:
    """Get or create the lock for one feed."""
    async with _feed_locks_guard:
        if feed_id not in _feed_locks:
            _feed_locks[feed_id] = asyncio.Lock()
        return _feed_locks[feed_id]


async def trigger_sync_for_feed(feed_id: int, **sync_options) -> Optional[SyncResult]:
    """Sync one feed unless a run for it is already in progress."""
    lock = await _get_feed_lock(feed_id)
    if lock.locked():
        logger.info(f"Sync already in progress for feed {feed_id}, skipping")
        return None

    async with lock:
        from feedsync.sync.engine import sync_feed_by_id
        return await sync_feed_by_id(feed_id, **sync_options)


def request_feed_sync(feed_id: int) -> asyncio.Task:
    """On-demand trigger: run a feed sync in the background."""
    return create_background_task(trigger_sync_for_feed(feed_id), task_name=f"feed_sync:{feed_id}")


async def run_periodic_sync() -> dict:
    """Sync every feed that is not disconnected, one at a time."""
    summary = {"feeds": 0, "active": 0, "error": 0, "skipped": 0}

    if not await acquire_job_lock(PERIODIC_SYNC_JOB):
        logger.debug("Periodic sync already running, skipping")
        return summary

    try:
        from feedsync.sync.store import get_event_store
        store = await get_event_store()
        feeds = await store.list_syncable_feeds()

        logger.info(f"Running periodic sync for {len(feeds)} feeds")

        for feed in feeds:
            summary["feeds"] += 1
            try:
                result = await trigger_sync_for_feed(feed.id)
            except Exception as e:
                logger.error(f"Error syncing feed {feed.id}: {e}")
                summary["error"] += 1
                continue

            if result is None:
                summary["skipped"] += 1
            elif result.status in ("active", "error"):
                summary[result.status] += 1

        logger.info(f"Periodic sync completed: {summary}")
        return summary

    finally:
        await release_job_lock(PERIODIC_SYNC_JOB)


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    # Locks older than the timeout belong to crashed runs
    await db.execute(
        "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
        (job_name, cutoff)
    )
    await db.commit()

    cursor = await db.execute(
        """INSERT INTO job_locks (job_name, locked_at, locked_by)
           VALUES (?, ?, ?)
           ON CONFLICT(job_name) DO NOTHING""",
        (job_name, now.isoformat(), "worker")
    )
    await db.commit()
    return cursor.rowcount > 0


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()

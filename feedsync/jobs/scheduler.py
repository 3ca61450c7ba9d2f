"""APScheduler setup for the periodic feed sweep."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from feedsync.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        "feedsync.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Feed Sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(f"Background scheduler started (every {settings.sync_interval_minutes} min)")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler

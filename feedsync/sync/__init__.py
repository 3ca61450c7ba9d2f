"""Sync engine module."""

from feedsync.sync.engine import sync_feed, sync_feed_by_id
from feedsync.sync.feeds import connect_google_feed, connect_ics_feed, describe_feed
from feedsync.sync.health import disconnect_feed
from feedsync.sync.models import CalendarEventInstance, Feed, SyncResult
from feedsync.sync.window import SyncWindow, get_default_sync_window

__all__ = [
    "sync_feed",
    "sync_feed_by_id",
    "connect_ics_feed",
    "connect_google_feed",
    "describe_feed",
    "disconnect_feed",
    "CalendarEventInstance",
    "Feed",
    "SyncResult",
    "SyncWindow",
    "get_default_sync_window",
]

"""Core sync engine: provider dispatch and the per-feed sync run."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from feedsync.errors import AuthFailure, FeedSyncError, FetchFailure, UnsupportedProviderError
from feedsync.sync.google_calendar import GoogleCalendarClient, map_google_events
from feedsync.sync.health import mark_feed_active, mark_feed_error
from feedsync.sync.ics import expand_ics_events, fetch_ics_text
from feedsync.sync.models import (
    CalendarEventInstance,
    Feed,
    FeedProvider,
    FeedStatus,
    SyncResult,
    format_instant,
)
from feedsync.sync.reconcile import reconcile_instances
from feedsync.sync.store import EventStore, get_event_store
from feedsync.sync.window import SyncWindow, get_default_sync_window

logger = logging.getLogger(__name__)

TokenProvider = Callable[[int], Awaitable[Optional[str]]]
RoleChecker = Callable[[int, str], Awaitable[bool]]


class FeedStrategy(Protocol):
    """Fetch a feed's source and map it to instances inside a window."""

    async def fetch_instances(self, feed: Feed, window: SyncWindow) -> list[CalendarEventInstance]:
        ...


class IcsFeedStrategy:
    """Download an ICS feed and expand it."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client

    async def fetch_instances(self, feed: Feed, window: SyncWindow) -> list[CalendarEventInstance]:
        if not feed.feed_url:
            raise FetchFailure(f"Feed {feed.id} has no feed URL")

        ics_text = await fetch_ics_text(feed.feed_url, self.http_client)
        return expand_ics_events(ics_text, window)


async def _default_token_provider(user_id: int) -> Optional[str]:
    from feedsync.auth.google import get_valid_access_token
    return await get_valid_access_token(user_id)


async def _default_role_checker(user_id: int, organization_id: str) -> bool:
    from feedsync.auth.google import is_active_org_admin
    return await is_active_org_admin(user_id, organization_id)


class GoogleFeedStrategy:
    """List a Google calendar's events in the window on behalf of the connected user."""

    def __init__(
        self,
        token_provider: Optional[TokenProvider] = None,
        role_checker: Optional[RoleChecker] = None,
        client_factory: Optional[Callable[[str], GoogleCalendarClient]] = None,
    ):
        self.token_provider = token_provider or _default_token_provider
        self.role_checker = role_checker or _default_role_checker
        self.client_factory = client_factory or GoogleCalendarClient

    async def fetch_instances(self, feed: Feed, window: SyncWindow) -> list[CalendarEventInstance]:
        if not feed.connected_user_id or not feed.google_calendar_id:
            raise AuthFailure("Missing connected_user_id or google_calendar_id")

        # An org feed stops syncing as soon as its authorizing admin loses the role
        if feed.is_org_scoped:
            if not await self.role_checker(feed.connected_user_id, feed.organization_id):
                raise AuthFailure("Connected user no longer has admin access")

        access_token = await self.token_provider(feed.connected_user_id)
        if not access_token:
            raise AuthFailure("Unable to obtain valid access token for connected user")

        events = await asyncio.to_thread(
            self._list_events, access_token, feed.google_calendar_id, window
        )
        logger.info(f"Fetched {len(events)} Google events for feed {feed.id}")
        return map_google_events(events)

    def _list_events(self, access_token: str, calendar_id: str, window: SyncWindow) -> list[dict]:
        client = self.client_factory(access_token)
        return client.list_window_events(calendar_id, window)


def get_feed_strategy(
    feed: Feed,
    token_provider: Optional[TokenProvider] = None,
    role_checker: Optional[RoleChecker] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FeedStrategy:
    """Select the strategy for a feed's provider. Unknown providers are an error."""
    if feed.provider == FeedProvider.ICS.value:
        return IcsFeedStrategy(http_client)
    if feed.provider == FeedProvider.GOOGLE.value:
        return GoogleFeedStrategy(token_provider, role_checker)
    raise UnsupportedProviderError(f"Unsupported calendar provider: {feed.provider!r}")


async def sync_feed(
    feed: Feed,
    *,
    window: Optional[SyncWindow] = None,
    now: Optional[datetime] = None,
    store: Optional[EventStore] = None,
    token_provider: Optional[TokenProvider] = None,
    role_checker: Optional[RoleChecker] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SyncResult:
    """
    Run one sync of a feed and record its health.

    Fetch and expand/map complete before any write; the upsert completes
    before the stale-delete query. Every failure is recorded on the feed and
    returned in the result rather than raised.
    """
    if feed.status == FeedStatus.DISABLED.value:
        logger.info(f"Feed {feed.id} is disconnected, skipping sync")
        return SyncResult(status=FeedStatus.DISABLED.value, last_synced_at=feed.last_synced_at)

    started_at = now or datetime.now(timezone.utc)
    window = window or get_default_sync_window(started_at)

    logger.info(
        f"Starting sync for feed {feed.id} ({feed.provider}), window "
        f"{format_instant(window.start)} - {format_instant(window.end)}"
    )

    try:
        store = store or await get_event_store()
        strategy = get_feed_strategy(feed, token_provider, role_checker, http_client)
        instances = await strategy.fetch_instances(feed, window)

        current = await store.get_feed(feed.id)
        if current is None or current.status == FeedStatus.DISABLED.value:
            logger.info(f"Feed {feed.id} was disconnected during fetch, discarding results")
            return SyncResult(status=FeedStatus.DISABLED.value, last_synced_at=feed.last_synced_at)

        outcome = await reconcile_instances(feed, instances, window, store)
        return await mark_feed_active(
            feed, format_instant(started_at), outcome.upserted, outcome.deleted, store
        )
    except FeedSyncError as e:
        logger.error(f"Sync failed for feed {feed.id}: {e}")
        return await mark_feed_error(feed, str(e), store)
    except Exception as e:
        logger.exception(f"Unexpected error syncing feed {feed.id}: {e}")
        return await mark_feed_error(feed, str(e) or "Failed to sync calendar feed.", store)


async def sync_feed_by_id(feed_id: int, **options) -> Optional[SyncResult]:
    """Load a feed and sync it. Returns None if the feed does not exist."""
    store = options.pop("store", None) or await get_event_store()
    feed = await store.get_feed(feed_id)
    if feed is None:
        logger.warning(f"Feed {feed_id} not found")
        return None
    return await sync_feed(feed, store=store, **options)

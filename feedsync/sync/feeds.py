"""Feed registration helpers."""

import logging
from typing import Optional
from urllib.parse import urlparse

from feedsync.errors import InvalidFeedUrlError
from feedsync.sync.engine import sync_feed
from feedsync.sync.models import Feed, FeedProvider, FeedScope
from feedsync.sync.store import EventStore, get_event_store

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}


def normalize_feed_url(raw_url: str) -> str:
    """Trim, rewrite webcal:// to https:// and require an http(s) URL with a host."""
    url = (raw_url or "").strip()
    if url.lower().startswith("webcal://"):
        url = "https://" + url[len("webcal://"):]

    parsed = urlparse(url)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidFeedUrlError("Feed URL must start with http(s) or webcal.")
    if not parsed.netloc:
        raise InvalidFeedUrlError("Feed URL must include a host.")

    return url


def is_likely_ics_url(feed_url: str) -> bool:
    lower = feed_url.lower()
    return ".ics" in lower or "ical" in lower or "calendar" in lower


def mask_feed_url(feed_url: Optional[str]) -> str:
    """Display form that hides the (often secret) path: host/...<last 6 chars>."""
    if not feed_url:
        return "hidden"
    host = urlparse(feed_url).netloc
    if not host:
        return "hidden"
    return f"{host}/...{feed_url[-6:]}"


def describe_feed(feed: Feed) -> dict:
    """Summary of a feed safe to show to users."""
    return {
        "id": feed.id,
        "provider": feed.provider,
        "masked_url": mask_feed_url(feed.feed_url) if feed.feed_url else None,
        "google_calendar_id": feed.google_calendar_id,
        "scope": feed.scope,
        "status": feed.status,
        "last_synced_at": feed.last_synced_at,
        "last_error": feed.last_error,
    }


async def connect_ics_feed(
    user_id: int,
    feed_url: str,
    organization_id: Optional[str] = None,
    scope: str = FeedScope.PERSONAL.value,
    sync: bool = True,
    store: Optional[EventStore] = None,
    **sync_options,
) -> Feed:
    """Register an ICS feed and (by default) run its first sync."""
    normalized = normalize_feed_url(feed_url)
    if not is_likely_ics_url(normalized):
        raise InvalidFeedUrlError("Feed URL does not look like an ICS calendar link.")

    store = store or await get_event_store()
    feed = await store.insert_feed(
        user_id=user_id,
        provider=FeedProvider.ICS.value,
        feed_url=normalized,
        organization_id=organization_id,
        scope=scope,
    )
    logger.info(f"Connected ICS feed {feed.id} for user {user_id} ({mask_feed_url(normalized)})")
    return await _initial_sync(feed, sync, store, **sync_options)


async def connect_google_feed(
    user_id: int,
    connected_user_id: int,
    google_calendar_id: str,
    organization_id: Optional[str] = None,
    scope: str = FeedScope.PERSONAL.value,
    sync: bool = True,
    store: Optional[EventStore] = None,
    **sync_options,
) -> Feed:
    """Register a Google calendar feed and (by default) run its first sync."""
    if not google_calendar_id:
        raise ValueError("google_calendar_id is required")

    store = store or await get_event_store()
    feed = await store.insert_feed(
        user_id=user_id,
        provider=FeedProvider.GOOGLE.value,
        google_calendar_id=google_calendar_id,
        connected_user_id=connected_user_id,
        organization_id=organization_id,
        scope=scope,
    )
    logger.info(f"Connected Google feed {feed.id} ({google_calendar_id}) for user {user_id}")
    return await _initial_sync(feed, sync, store, **sync_options)


async def _initial_sync(feed: Feed, sync: bool, store: EventStore, **sync_options) -> Feed:
    if not sync:
        return feed
    await sync_feed(feed, store=store, **sync_options)
    return await store.get_feed(feed.id)

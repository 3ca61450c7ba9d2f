"""Exceptions raised while synchronizing calendar feeds.

Every failure inside a sync run derives from :class:`FeedSyncError` so the
engine can convert it into the feed's persisted error state.
"""

from typing import Iterable, Optional


class FeedSyncError(Exception):
    """Base exception for feed sync failures."""


class FetchFailure(FeedSyncError):
    """Network, timeout or non-success response while retrieving source data."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthFailure(FeedSyncError):
    """Missing/invalid credentials or lost authorization. Never retried."""


class ParseFailure(FeedSyncError):
    """Malformed source payload."""


class StoreFailure(FeedSyncError):
    """The event store rejected an operation."""


class SchemaMismatchError(StoreFailure):
    """A write referenced columns the target table does not have."""

    def __init__(self, table: str, missing_columns: Iterable[str]):
        self.table = table
        self.missing_columns = frozenset(missing_columns)
        super().__init__(
            f"Table {table} has no column(s): {', '.join(sorted(self.missing_columns))}"
        )


class UnsupportedProviderError(FeedSyncError):
    """The feed declares a provider no strategy handles."""


class InvalidFeedUrlError(FeedSyncError):
    """A feed URL failed validation at registration time."""

"""Feed, instance and result models shared by the sync pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class FeedStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


class FeedProvider(str, Enum):
    ICS = "ics"
    GOOGLE = "google"


class FeedScope(str, Enum):
    PERSONAL = "personal"
    ORG = "org"


def format_instant(value: datetime) -> str:
    """Render an instant as fixed-width ISO-8601 UTC, e.g. 2026-03-02T15:00:00.000Z.

    Naive datetimes are taken to be UTC. The fixed width keeps lexicographic
    order equal to chronological order for stored timestamps.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_instance_key(external_uid: str, start: datetime) -> str:
    """Instance key: series identifier + resolved start instant."""
    return f"{external_uid}|{format_instant(start)}"


class Feed(BaseModel):
    """A configured external calendar source (row of calendar_feeds)."""

    id: int
    user_id: int
    organization_id: Optional[str] = None
    scope: str = FeedScope.PERSONAL.value
    provider: str = FeedProvider.ICS.value
    feed_url: Optional[str] = None
    google_calendar_id: Optional[str] = None
    connected_user_id: Optional[int] = None
    status: str = FeedStatus.ACTIVE.value
    last_synced_at: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Feed":
        return cls(**dict(row))

    @property
    def is_org_scoped(self) -> bool:
        return bool(self.organization_id) and self.scope == FeedScope.ORG.value


class CalendarEventInstance(BaseModel):
    """One concrete occurrence produced by a feed."""

    external_uid: str
    instance_key: str
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: str
    end_at: Optional[str] = None
    all_day: bool = False
    raw: Optional[dict] = None


class SyncResult(BaseModel):
    """Outcome of one sync run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str
    last_synced_at: Optional[str] = None
    last_error: Optional[str] = None
    upserted: int = 0
    deleted: int = 0

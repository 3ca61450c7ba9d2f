"""Sync window calculation."""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from feedsync.config import get_settings


@dataclass(frozen=True)
class SyncWindow:
    """Half-open range [start, end) of UTC instants."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("SyncWindow bounds must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("SyncWindow end must be after start")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


def _utc_midnight(day) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def get_default_sync_window(
    now: Optional[datetime] = None,
    past_days: Optional[int] = None,
    future_days: Optional[int] = None,
) -> SyncWindow:
    """
    Window from midnight `past_days` before now to the end of the day
    `future_days` after now (UTC).
    """
    settings = get_settings()
    if past_days is None:
        past_days = settings.sync_window_past_days
    if future_days is None:
        future_days = settings.sync_window_future_days

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(timezone.utc).date()

    start = _utc_midnight(today - timedelta(days=past_days))
    end = _utc_midnight(today + timedelta(days=future_days + 1))
    return SyncWindow(start=start, end=end)

"""Google Calendar API wrapper and event mapping."""

import logging
from datetime import date, datetime, time, timezone
from typing import Optional

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from feedsync.config import get_settings
from feedsync.errors import AuthFailure, FetchFailure
from feedsync.sync.models import CalendarEventInstance, build_instance_key, format_instant
from feedsync.sync.window import SyncWindow

logger = logging.getLogger(__name__)

AUTH_ERROR_STATUSES = (401, 403)


class GoogleCalendarClient:
    """Read-only wrapper around the Google Calendar events API."""

    def __init__(self, access_token: str):
        """Initialize with access token."""
        self.settings = get_settings()
        self.credentials = Credentials(token=access_token)
        http = AuthorizedHttp(
            self.credentials,
            http=httplib2.Http(timeout=self.settings.google_request_timeout_seconds),
        )
        self.service = build("calendar", "v3", http=http, cache_discovery=False)

    def list_window_events(self, calendar_id: str, window: SyncWindow) -> list[dict]:
        """
        List single (expanded) events overlapping a window.

        Follows nextPageToken until the listing is exhausted.
        """
        request_params = {
            "calendarId": calendar_id,
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": self.settings.google_page_size,
            "timeMin": format_instant(window.start),
            "timeMax": format_instant(window.end),
        }

        all_events = []
        page_token = None

        try:
            while True:
                if page_token:
                    request_params["pageToken"] = page_token

                result = self.service.events().list(**request_params).execute(
                    num_retries=self.settings.fetch_retries
                )
                all_events.extend(result.get("items", []))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            status = e.resp.status
            if status in AUTH_ERROR_STATUSES:
                raise AuthFailure(f"Google Calendar API rejected credentials ({status})") from e
            raise FetchFailure(f"Google Calendar API error ({status})", status_code=status) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise FetchFailure(f"Google Calendar API request failed: {e}") from e

        return all_events


def _resolve_google_time(value: dict) -> Optional[tuple[datetime, bool]]:
    """Return (UTC instant, is date-only) for a Google start/end object."""
    if value.get("dateTime"):
        instant = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(timezone.utc), False

    if value.get("date"):
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=timezone.utc), True

    return None


def map_google_event(event: dict) -> Optional[CalendarEventInstance]:
    """
    Map a Google event onto an instance, or None when it must be skipped.

    Skipped: cancelled events and events without an id or a resolvable start.
    Occurrences of a recurring series are keyed by the parent series id.
    """
    if event.get("status") == "cancelled":
        return None

    event_id = event.get("id")
    start_value = event.get("start")
    if not event_id or not start_value:
        return None

    resolved_start = _resolve_google_time(start_value)
    if resolved_start is None:
        return None
    start, all_day = resolved_start

    end_at = None
    if event.get("end"):
        resolved_end = _resolve_google_time(event["end"])
        if resolved_end is not None:
            end_at = format_instant(resolved_end[0])

    external_uid = event.get("recurringEventId") or event_id

    return CalendarEventInstance(
        external_uid=external_uid,
        instance_key=build_instance_key(external_uid, start),
        title=event.get("summary"),
        description=event.get("description"),
        location=event.get("location"),
        start_at=format_instant(start),
        end_at=end_at,
        all_day=all_day,
        raw={
            "googleEventId": event_id,
            "recurringEventId": event.get("recurringEventId"),
            "summary": event.get("summary"),
            "description": event.get("description"),
            "location": event.get("location"),
            "start": start_value,
            "end": event.get("end"),
            "status": event.get("status"),
        },
    )


def map_google_events(events: list[dict]) -> list[CalendarEventInstance]:
    """Map a page-merged event listing, dropping skipped events and duplicate keys."""
    instances: dict[str, CalendarEventInstance] = {}
    skipped = 0

    for event in events:
        instance = map_google_event(event)
        if instance is None:
            skipped += 1
            continue
        if instance.instance_key not in instances:
            instances[instance.instance_key] = instance

    if skipped:
        logger.debug(f"Skipped {skipped} cancelled or incomplete Google events")
    return list(instances.values())

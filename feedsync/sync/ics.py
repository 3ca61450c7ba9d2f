"""ICS feed retrieval and recurrence expansion."""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterator, Optional

import httpx
from dateutil.rrule import rrulestr
from icalendar import Calendar

from feedsync.config import get_settings
from feedsync.errors import FetchFailure, ParseFailure
from feedsync.sync.models import CalendarEventInstance, build_instance_key, format_instant
from feedsync.sync.window import SyncWindow

logger = logging.getLogger(__name__)

ICS_ACCEPT = "text/calendar,text/plain"


def to_fetchable_url(feed_url: str) -> str:
    """Map webcal:// subscription links onto https://."""
    url = feed_url.strip()
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def _describe_http_error(error: Exception) -> str:
    detail = str(error)
    return detail if detail else type(error).__name__


async def fetch_ics_text(
    feed_url: str,
    client: Optional[httpx.AsyncClient] = None,
    *,
    retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    timeout: Optional[float] = None,
) -> str:
    """
    Download a feed with a hard timeout and a bounded number of retries.

    Each attempt is cancelled after `timeout` seconds; timeouts, transport
    errors and non-2xx responses all count toward the retry budget. Once it
    is spent the last failure is raised as FetchFailure.
    """
    settings = get_settings()
    if retries is None:
        retries = settings.fetch_retries
    if retry_delay is None:
        retry_delay = settings.fetch_retry_delay_seconds
    if timeout is None:
        timeout = settings.ics_fetch_timeout_seconds

    url = to_fetchable_url(feed_url)
    headers = {"User-Agent": settings.ics_user_agent, "Accept": ICS_ACCEPT}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True)

    last_error: Optional[FetchFailure] = None
    try:
        for attempt in range(retries + 1):
            try:
                response = await asyncio.wait_for(
                    client.get(url, headers=headers), timeout=timeout
                )
                if not response.is_success:
                    raise FetchFailure(
                        f"ICS fetch failed ({response.status_code})",
                        status_code=response.status_code,
                    )
                return response.text
            except asyncio.TimeoutError:
                last_error = FetchFailure(f"ICS fetch timed out after {timeout}s")
            except httpx.HTTPError as e:
                last_error = FetchFailure(f"ICS fetch failed: {_describe_http_error(e)}")
            except FetchFailure as e:
                last_error = e

            if attempt < retries:
                logger.warning(
                    f"ICS fetch attempt {attempt + 1}/{retries + 1} failed, "
                    f"retrying in {retry_delay}s: {last_error}"
                )
                await asyncio.sleep(retry_delay)
    finally:
        if owns_client:
            await client.aclose()

    logger.error(f"ICS fetch failed after {retries + 1} attempts: {last_error}")
    raise last_error


# ---------------------------------------------------------------------------
# Parsing and expansion
# ---------------------------------------------------------------------------

def _is_date_only(value) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _resolve_instant(value, zone: Optional[tzinfo] = None) -> datetime:
    """Resolve a DATE or DATE-TIME value to a UTC instant.

    Dates map to UTC midnight; floating times are read in `zone` (UTC when
    no zone is known).
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = _localize(value, zone or timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _localize(naive: datetime, zone: tzinfo) -> datetime:
    # pytz zones need localize() to pick the right UTC offset
    localize = getattr(zone, "localize", None)
    if localize is not None:
        return localize(naive)
    return naive.replace(tzinfo=zone)


def _series_zone(start_value) -> Optional[tzinfo]:
    if isinstance(start_value, datetime):
        return start_value.tzinfo
    return None


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _resolve_end(component, start: datetime, start_value, zone: Optional[tzinfo]) -> Optional[datetime]:
    dtend = component.get("DTEND")
    if dtend is not None:
        return _resolve_instant(dtend.dt, zone)

    duration = component.get("DURATION")
    if duration is not None:
        return start + duration.dt

    if _is_date_only(start_value):
        return start + timedelta(days=1)

    return None


def _is_all_day(date_only: bool, start: datetime, end: Optional[datetime]) -> bool:
    if date_only:
        return True
    if end is None:
        return False
    return start.time() == time.min and end.time() == time.min


def _collect_exdates(component, zone: Optional[tzinfo]) -> set[str]:
    raw = component.get("EXDATE")
    if raw is None:
        return set()
    if not isinstance(raw, list):
        raw = [raw]

    excluded = set()
    for prop in raw:
        for item in prop.dts:
            excluded.add(format_instant(_resolve_instant(item.dt, zone)))
    return excluded


def _occurrence_starts(rrule_prop, start_value, window: SyncWindow) -> Iterator[datetime]:
    """Yield UTC occurrence starts of a series that fall inside the window.

    The rule is evaluated on naive wall-clock time in the series' own zone so
    that occurrences keep their local time across DST transitions.
    """
    zone = _series_zone(start_value) or timezone.utc
    if isinstance(start_value, datetime):
        local_start = start_value.replace(tzinfo=None)
    else:
        local_start = datetime.combine(start_value, time.min)

    try:
        rule = rrulestr(rrule_prop.to_ical().decode("utf-8"), dtstart=local_start, ignoretz=True)
        until = _first(rrule_prop.get("UNTIL"))
        if isinstance(until, datetime) and until.tzinfo is not None:
            rule = rule.replace(until=until.astimezone(zone).replace(tzinfo=None))
    except (ValueError, TypeError) as e:
        raise ParseFailure(f"Invalid RRULE: {e}") from e

    # Pad by a day on each side to cover any UTC offset, then filter exactly
    lower = window.start.astimezone(zone).replace(tzinfo=None) - timedelta(days=1)
    upper = window.end.astimezone(zone).replace(tzinfo=None) + timedelta(days=1)

    for local in rule.between(lower, upper, inc=True):
        instant = _localize(local, zone).astimezone(timezone.utc)
        if window.contains(instant):
            yield instant


def _build_instance(
    component,
    uid: str,
    start: datetime,
    end: Optional[datetime],
    date_only: bool,
    rrule_text: Optional[str] = None,
    exdates: Optional[set[str]] = None,
) -> CalendarEventInstance:
    start_at = format_instant(start)
    end_at = format_instant(end) if end is not None else None
    title = _text(component, "SUMMARY")
    description = _text(component, "DESCRIPTION")
    location = _text(component, "LOCATION")

    return CalendarEventInstance(
        external_uid=uid,
        instance_key=build_instance_key(uid, start),
        title=title,
        description=description,
        location=location,
        start_at=start_at,
        end_at=end_at,
        all_day=_is_all_day(date_only, start, end),
        raw={
            "uid": uid,
            "summary": title,
            "description": description,
            "location": location,
            "start": start_at,
            "end": end_at,
            "rrule": rrule_text,
            "exdate": sorted(exdates) if exdates else None,
        },
    )


def _add_instance(instances: dict[str, CalendarEventInstance], instance: CalendarEventInstance) -> None:
    if instance.instance_key not in instances:
        instances[instance.instance_key] = instance


def _expand_series(
    component,
    uid: str,
    overrides: list,
    window: SyncWindow,
) -> Iterator[CalendarEventInstance]:
    start_value = component["DTSTART"].dt
    zone = _series_zone(start_value)
    base_start = _resolve_instant(start_value, zone)
    base_end = _resolve_end(component, base_start, start_value, zone)
    duration = base_end - base_start if base_end is not None else None

    rrule_prop = _first(component.get("RRULE"))
    rrule_text = rrule_prop.to_ical().decode("utf-8")
    exdates = _collect_exdates(component, zone)

    overrides_by_start = {}
    for override in overrides:
        recurrence_id = override.get("RECURRENCE-ID")
        key = format_instant(_resolve_instant(recurrence_id.dt, zone))
        overrides_by_start[key] = override

    for occurrence in _occurrence_starts(rrule_prop, start_value, window):
        occurrence_key = format_instant(occurrence)
        if occurrence_key in exdates:
            continue

        override = overrides_by_start.get(occurrence_key)
        if override is None:
            end = occurrence + duration if duration is not None else None
            yield _build_instance(
                component, uid, occurrence, end, _is_date_only(start_value), rrule_text, exdates
            )
            continue

        if _text(override, "STATUS") == "CANCELLED":
            continue

        override_start = override.get("DTSTART")
        if override_start is not None:
            override_value = override_start.dt
            start = _resolve_instant(override_value, zone)
        else:
            override_value = start_value
            start = occurrence
        end = _resolve_end(override, start, override_value, zone)
        if end is None and duration is not None:
            end = start + duration
        yield _build_instance(
            override, uid, start, end, _is_date_only(override_value), rrule_text, exdates
        )


def _expand_component(
    component,
    uid: str,
    overrides: list,
    window: SyncWindow,
) -> Iterator[CalendarEventInstance]:
    dtstart = component.get("DTSTART")
    if dtstart is None:
        return

    if component.get("RRULE") is not None:
        yield from _expand_series(component, uid, overrides, window)
        return

    start_value = dtstart.dt
    zone = _series_zone(start_value)
    start = _resolve_instant(start_value, zone)
    if window.contains(start):
        end = _resolve_end(component, start, start_value, zone)
        yield _build_instance(component, uid, start, end, _is_date_only(start_value))


def expand_ics_events(ics_text: str, window: SyncWindow) -> list[CalendarEventInstance]:
    """
    Parse a feed and expand it into the concrete instances inside `window`.

    Overrides (components with RECURRENCE-ID) are only applied while
    expanding their parent series and are never emitted on their own.
    """
    if "BEGIN:VCALENDAR" not in ics_text.upper():
        raise ParseFailure("Feed payload is not an iCalendar document")

    try:
        calendar = Calendar.from_ical(ics_text)
    except ValueError as e:
        raise ParseFailure(f"Failed to parse ICS feed: {e}") from e

    masters = []
    overrides: dict[str, list] = {}
    for component in calendar.walk("VEVENT"):
        uid = _text(component, "UID")
        if not uid:
            continue
        if component.get("RECURRENCE-ID") is not None:
            overrides.setdefault(uid, []).append(component)
            continue
        masters.append((uid, component))

    instances: dict[str, CalendarEventInstance] = {}

    for uid, component in masters:
        # Unparseable property values surface as ValueError or, for broken
        # date properties, an error on .dt access
        try:
            for instance in _expand_component(component, uid, overrides.get(uid, []), window):
                _add_instance(instances, instance)
        except (ValueError, AttributeError) as e:
            raise ParseFailure(f"Invalid event {uid!r} in ICS feed: {e}") from e

    logger.debug(
        f"Expanded {len(masters)} ICS events into {len(instances)} instances "
        f"({sum(len(v) for v in overrides.values())} overrides)"
    )
    return list(instances.values())

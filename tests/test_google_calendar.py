"""Tests for the Google Calendar client wrapper and event mapping."""

from types import SimpleNamespace

import pytest

from feedsync.errors import AuthFailure, FetchFailure
from feedsync.sync.google_calendar import GoogleCalendarClient, map_google_event, map_google_events


def _client_with_pages(pages: list[dict], calls: list[dict]) -> GoogleCalendarClient:
    class FakeEvents:
        def list(self, **kwargs):
            calls.append(dict(kwargs))
            page = pages[len(calls) - 1]
            return SimpleNamespace(execute=lambda **_kwargs: page)

    client = object.__new__(GoogleCalendarClient)
    client.settings = SimpleNamespace(google_page_size=250, fetch_retries=0)
    client.service = SimpleNamespace(events=lambda: FakeEvents())
    return client


def test_list_window_events_follows_page_tokens(window):
    calls = []
    client = _client_with_pages(
        [
            {"items": [{"id": "a"}], "nextPageToken": "page-2"},
            {"items": [{"id": "b"}, {"id": "c"}]},
        ],
        calls,
    )

    events = client.list_window_events("team@example.com", window)

    assert [event["id"] for event in events] == ["a", "b", "c"]
    assert len(calls) == 2
    assert calls[0]["singleEvents"] is True
    assert calls[0]["orderBy"] == "startTime"
    assert calls[0]["timeMin"] == "2026-03-01T00:00:00.000Z"
    assert calls[0]["timeMax"] == "2026-03-29T00:00:00.000Z"
    assert "pageToken" not in calls[0]
    assert calls[1]["pageToken"] == "page-2"


def test_list_window_events_maps_http_errors(monkeypatch, window):
    """Rejected credentials become AuthFailure; other API errors FetchFailure."""
    from feedsync.sync import google_calendar as module

    class FakeHttpError(Exception):
        def __init__(self, status: int):
            self.resp = SimpleNamespace(status=status)

    class FakeEvents:
        def __init__(self, status: int):
            self.status = status

        def list(self, **_kwargs):
            def _raise(**_kwargs):
                raise FakeHttpError(self.status)

            return SimpleNamespace(execute=_raise)

    monkeypatch.setattr(module, "HttpError", FakeHttpError)

    client = object.__new__(GoogleCalendarClient)
    client.settings = SimpleNamespace(google_page_size=250, fetch_retries=0)

    client.service = SimpleNamespace(events=lambda: FakeEvents(401))
    with pytest.raises(AuthFailure):
        client.list_window_events("cal", window)

    client.service = SimpleNamespace(events=lambda: FakeEvents(403))
    with pytest.raises(AuthFailure):
        client.list_window_events("cal", window)

    client.service = SimpleNamespace(events=lambda: FakeEvents(500))
    with pytest.raises(FetchFailure) as exc_info:
        client.list_window_events("cal", window)
    assert exc_info.value.status_code == 500


def test_list_window_events_maps_transport_errors(window):
    class FakeEvents:
        def list(self, **_kwargs):
            def _raise(**_kwargs):
                raise TimeoutError("timed out")

            return SimpleNamespace(execute=_raise)

    client = object.__new__(GoogleCalendarClient)
    client.settings = SimpleNamespace(google_page_size=250, fetch_retries=0)
    client.service = SimpleNamespace(events=lambda: FakeEvents())

    with pytest.raises(FetchFailure, match="request failed"):
        client.list_window_events("cal", window)


def test_map_timed_occurrence_uses_series_id_and_utc_start():
    instance = map_google_event({
        "id": "series_20260302T150000Z",
        "recurringEventId": "series",
        "status": "confirmed",
        "summary": "Standup",
        "location": "Room 1",
        "start": {"dateTime": "2026-03-02T10:00:00-05:00"},
        "end": {"dateTime": "2026-03-02T10:30:00-05:00"},
    })

    assert instance.external_uid == "series"
    assert instance.instance_key == "series|2026-03-02T15:00:00.000Z"
    assert instance.start_at == "2026-03-02T15:00:00.000Z"
    assert instance.end_at == "2026-03-02T15:30:00.000Z"
    assert instance.all_day is False
    assert instance.location == "Room 1"
    assert instance.raw["googleEventId"] == "series_20260302T150000Z"


def test_map_date_only_event_is_all_day():
    instance = map_google_event({
        "id": "holiday",
        "start": {"date": "2026-03-10"},
        "end": {"date": "2026-03-11"},
    })

    assert instance.external_uid == "holiday"
    assert instance.all_day is True
    assert instance.start_at == "2026-03-10T00:00:00.000Z"
    assert instance.end_at == "2026-03-11T00:00:00.000Z"


def test_map_skips_cancelled_and_incomplete_events():
    start = {"dateTime": "2026-03-02T15:00:00Z"}

    assert map_google_event({"id": "gone", "status": "cancelled", "start": start}) is None
    assert map_google_event({"start": start}) is None
    assert map_google_event({"id": "no-start"}) is None
    assert map_google_event({"id": "empty-start", "start": {}}) is None


def test_map_google_events_drops_skipped_and_duplicate_keys():
    start = {"dateTime": "2026-03-02T15:00:00Z"}
    instances = map_google_events([
        {"id": "a", "summary": "First", "start": start},
        {"id": "a", "summary": "Again", "start": start},
        {"id": "b", "status": "cancelled", "start": start},
        {"id": "c", "start": {"dateTime": "2026-03-03T15:00:00Z"}},
    ])

    assert [instance.instance_key for instance in instances] == [
        "a|2026-03-02T15:00:00.000Z",
        "c|2026-03-03T15:00:00.000Z",
    ]
    assert instances[0].title == "First"

"""Tests for reconciling produced instances against the event store."""

from datetime import datetime, timezone

import aiosqlite
import pytest
import pytest_asyncio

from feedsync.errors import SchemaMismatchError
from feedsync.sync.models import CalendarEventInstance, Feed, build_instance_key, format_instant
from feedsync.sync.reconcile import (
    ReconcileContext,
    build_event_row,
    delete_stale_instances,
    reconcile_instances,
    upsert_instances,
)
from feedsync.sync.store import EventStore

LEGACY_EVENTS_TABLE = """
CREATE TABLE calendar_events (
    id INTEGER PRIMARY KEY,
    feed_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    external_uid TEXT NOT NULL,
    instance_key TEXT NOT NULL,
    title TEXT,
    description TEXT,
    location TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP,
    all_day BOOLEAN DEFAULT FALSE,
    raw TEXT,
    updated_at TIMESTAMP,
    UNIQUE(feed_id, instance_key)
);
"""


def _instance(uid: str, day: int, hour: int = 9, **fields) -> CalendarEventInstance:
    start = datetime(2026, 3, day, hour, tzinfo=timezone.utc)
    return CalendarEventInstance(
        external_uid=uid,
        instance_key=build_instance_key(uid, start),
        start_at=format_instant(start),
        **fields,
    )


async def _insert_feed(store: EventStore, **fields) -> Feed:
    fields.setdefault("user_id", 7)
    fields.setdefault("feed_url", "https://cal.example.com/team.ics")
    return await store.insert_feed(**fields)


@pytest_asyncio.fixture
async def legacy_store():
    """Store over a table created before organization_id/scope existed."""
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(LEGACY_EVENTS_TABLE)
    await db.commit()

    yield EventStore(db)

    await db.close()


@pytest.mark.asyncio
async def test_reconcile_inserts_then_is_idempotent(store, window):
    feed = await _insert_feed(store)
    instances = [_instance("a", 2), _instance("b", 3)]

    first = await reconcile_instances(feed, instances, window, store)
    second = await reconcile_instances(feed, instances, window, store)

    assert (first.upserted, first.deleted) == (2, 0)
    assert (second.upserted, second.deleted) == (2, 0)

    rows = await store.list_events(feed.id)
    assert [row["instance_key"] for row in rows] == [i.instance_key for i in instances]
    assert rows[0]["scope"] == "personal"
    assert rows[0]["user_id"] == 7


@pytest.mark.asyncio
async def test_reconcile_replaces_every_column(store, window):
    """Fields absent from the new version are cleared, not kept."""
    feed = await _insert_feed(store)
    await reconcile_instances(
        feed, [_instance("a", 2, title="Review", location="Room 1", description="Bring notes")], window, store
    )
    await reconcile_instances(feed, [_instance("a", 2, title="Review v2")], window, store)

    [row] = await store.list_events(feed.id)
    assert row["title"] == "Review v2"
    assert row["location"] is None
    assert row["description"] is None


@pytest.mark.asyncio
async def test_reconcile_deletes_stale_instances_inside_window_only(store, window):
    feed = await _insert_feed(store)
    outside = CalendarEventInstance(
        external_uid="old",
        instance_key="old|2026-01-05T09:00:00.000Z",
        start_at="2026-01-05T09:00:00.000Z",
    )
    await upsert_instances(store, feed, [outside], ReconcileContext())
    await reconcile_instances(feed, [_instance("a", 2), _instance("b", 3)], window, store)

    outcome = await reconcile_instances(feed, [_instance("a", 2)], window, store)

    assert outcome.deleted == 1
    keys = [row["instance_key"] for row in await store.list_events(feed.id)]
    assert keys == ["old|2026-01-05T09:00:00.000Z", "a|2026-03-02T09:00:00.000Z"]


@pytest.mark.asyncio
async def test_reconcile_with_no_instances_clears_window(store, window):
    feed = await _insert_feed(store)
    await reconcile_instances(feed, [_instance("a", 2), _instance("b", 3)], window, store)

    outcome = await reconcile_instances(feed, [], window, store)

    assert (outcome.upserted, outcome.deleted) == (0, 2)
    assert await store.list_events(feed.id) == []


@pytest.mark.asyncio
async def test_reconcile_leaves_other_feeds_alone(store, window):
    feed = await _insert_feed(store)
    other = await _insert_feed(store, user_id=8)
    await reconcile_instances(other, [_instance("x", 4)], window, store)

    await reconcile_instances(feed, [_instance("a", 2)], window, store)

    assert len(await store.list_events(other.id)) == 1


@pytest.mark.asyncio
async def test_org_feed_rows_carry_organization(store, window):
    feed = await _insert_feed(store, organization_id="org-1", scope="org")
    await reconcile_instances(feed, [_instance("a", 2)], window, store)

    [row] = await store.list_events(feed.id)
    assert row["organization_id"] == "org-1"
    assert row["scope"] == "org"


@pytest.mark.asyncio
async def test_legacy_schema_degrades_once_per_run(legacy_store, window, monkeypatch):
    """Only the first chunk tries the optional columns; later chunks skip them."""
    feed = Feed(id=1, user_id=7, organization_id="org-1", scope="org")
    instances = [_instance(uid, day) for uid, day in zip("abcde", range(2, 7))]

    calls = []
    original = legacy_store.upsert_events

    async def counting_upsert(rows):
        calls.append("scope" in rows[0])
        await original(rows)

    monkeypatch.setattr(legacy_store, "upsert_events", counting_upsert)

    context = ReconcileContext()
    upserted = await upsert_instances(legacy_store, feed, instances, context, chunk_size=2)

    assert upserted == 5
    assert context.degraded is True
    assert context.include_optional_columns is False
    assert calls == [True, False, False, False]
    assert len(await legacy_store.list_events(feed.id)) == 5


@pytest.mark.asyncio
async def test_legacy_schema_fallback_is_scoped_to_one_run(legacy_store, window):
    feed = Feed(id=1, user_id=7)

    outcome = await reconcile_instances(feed, [_instance("a", 2)], window, legacy_store)
    assert outcome.degraded is True

    fresh = ReconcileContext()
    assert fresh.include_optional_columns is True
    assert fresh.degraded is False


@pytest.mark.asyncio
async def test_missing_required_column_is_not_masked(legacy_store):
    """Only optional columns may be dropped; anything else propagates."""
    await legacy_store.db.execute("ALTER TABLE calendar_events RENAME COLUMN raw TO payload")
    await legacy_store.db.commit()
    feed = Feed(id=1, user_id=7)

    with pytest.raises(SchemaMismatchError) as exc_info:
        await upsert_instances(legacy_store, feed, [_instance("a", 2)], ReconcileContext())

    assert "raw" in exc_info.value.missing_columns


def test_build_event_row_omits_optional_columns_when_degraded():
    feed = Feed(id=3, user_id=7, organization_id="org-1", scope="org")
    row = build_event_row(feed, _instance("a", 2), False, "2026-03-01T00:00:00.000Z")

    assert "organization_id" not in row
    assert "scope" not in row
    assert row["feed_id"] == 3
    assert row["instance_key"] == "a|2026-03-02T09:00:00.000Z"


@pytest.mark.asyncio
async def test_stale_instances_are_deleted_in_chunks(store, window, mocker):
    feed = await _insert_feed(store)
    instances = [_instance(uid, day) for uid, day in zip("abcdef", range(2, 8))]
    await upsert_instances(store, feed, instances, ReconcileContext())
    delete_spy = mocker.spy(store, "delete_events")

    deleted = await delete_stale_instances(store, feed, window, {"a|2026-03-02T09:00:00.000Z"}, chunk_size=2)

    assert deleted == 5
    assert [len(call.args[0]) for call in delete_spy.call_args_list] == [2, 2, 1]
    assert [row["external_uid"] for row in await store.list_events(feed.id)] == ["a"]

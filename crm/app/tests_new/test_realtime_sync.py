import asyncio
import json

import pytest

from conftest import make_booking

from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.realtime import ChangeEvent, PgNotifyBridge, RealtimeFeed, parse_notify_payload
from crm.app.workers.realtime_sync import (
    RealtimeBookingSync,
    has_relevant_changes,
    start_realtime_sync_worker,
)

KEY = ("bookings", "all")


def _row(booking_id, **fields):
    return {"id": booking_id, "status": "pending", "payment_status": "unpaid", **fields}


def _setup(selected=None, refresh=None):
    cache = QueryCache()
    cache.write(KEY, [make_booking("b1"), make_booking("b2")])
    selection = BookingSelection(selected)
    return cache, selection, RealtimeBookingSync(cache, selection, refresh=refresh)


def test_has_relevant_changes():
    a = make_booking("b1", status="pending")
    assert has_relevant_changes(None, a)
    assert not has_relevant_changes(a, make_booking("b1", status="pending", customer_name="New"))
    assert has_relevant_changes(a, make_booking("b1", payment_status="paid"))


@pytest.mark.asyncio
async def test_update_replaces_cached_booking():
    cache, selection, sync = _setup()
    await sync.handle(ChangeEvent("bookings", "UPDATE", new=_row("b1", status="confirmed")))
    assert cache.find_booking("b1").status == "confirmed"
    assert cache.find_booking("b2").status == "pending"
    assert selection.selected is None
    assert not cache.is_stale(KEY)


@pytest.mark.asyncio
async def test_selected_booking_resynced_only_on_relevant_change():
    original = make_booking("b1", customer_name="Ann")
    cache, selection, sync = _setup(selected=original)

    await sync.handle(ChangeEvent("bookings", "UPDATE", new=_row("b1", customer_name="Anna")))
    assert selection.selected is original

    await sync.handle(ChangeEvent("bookings", "UPDATE", new=_row("b1", payment_status="paid")))
    assert selection.selected.payment_status == "paid"
    assert selection.last_synced is selection.selected


@pytest.mark.asyncio
async def test_malformed_update_is_skipped():
    cache, _, sync = _setup()
    await sync.handle(ChangeEvent("bookings", "UPDATE", new={"status": "confirmed"}))
    assert cache.find_booking("b1").status == "pending"


@pytest.mark.asyncio
async def test_insert_invalidates_and_refreshes():
    calls = []

    async def refresh():
        calls.append("refresh")

    cache, _, sync = _setup(refresh=refresh)
    await sync.handle(ChangeEvent("bookings", "INSERT", new=_row("b3")))
    assert cache.is_stale(KEY)
    assert calls == ["refresh"]


@pytest.mark.asyncio
async def test_delete_of_selected_booking_clears_selection():
    calls = []
    cache, selection, sync = _setup(selected=make_booking("b1"), refresh=lambda: calls.append(1))
    await sync.handle(ChangeEvent("bookings", "DELETE", old=_row("b1")))
    assert selection.selected is None
    assert calls == [1]
    assert list(cache.stale_keys()) == [KEY]


def test_parse_notify_payload():
    event = parse_notify_payload(json.dumps({"table": "bookings", "type": "update", "new": _row("b1")}))
    assert event.event_type == "UPDATE"
    assert event.row["id"] == "b1"
    assert event.old == {}

    assert parse_notify_payload("not json") is None
    assert parse_notify_payload("[1, 2]") is None
    assert parse_notify_payload(json.dumps({"table": "bookings", "type": "TRUNCATE"})) is None


@pytest.mark.asyncio
async def test_feed_dispatch_respects_table_and_predicate():
    feed = RealtimeFeed()
    seen = []
    feed.subscribe("bookings", lambda e: seen.append(("all", e.row["id"])))
    feed.subscribe("bookings", lambda e: seen.append(("b2", e.row["id"])), predicate=lambda e: e.row.get("id") == "b2")
    feed.subscribe("customers", lambda e: seen.append(("customers", e.row["id"])))

    feed.put_nowait(ChangeEvent("bookings", "UPDATE", new=_row("b1")))
    feed.put_nowait(ChangeEvent("bookings", "UPDATE", new=_row("b2")))
    assert await feed.drain() == 2
    assert seen == [("all", "b1"), ("all", "b2"), ("b2", "b2")]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    feed = RealtimeFeed()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    feed.subscribe("bookings", broken)
    feed.subscribe("bookings", lambda e: seen.append(e.row["id"]))
    assert await feed.publish(ChangeEvent("bookings", "UPDATE", new=_row("b1"))) == 1
    assert seen == ["b1"]


@pytest.mark.asyncio
async def test_full_queue_drops_events():
    feed = RealtimeFeed(maxsize=1)
    assert feed.put_nowait(ChangeEvent("bookings", "INSERT", new=_row("b1")))
    assert not feed.put_nowait(ChangeEvent("bookings", "INSERT", new=_row("b2")))


@pytest.mark.asyncio
async def test_bridge_forwards_notifications_into_feed():
    feed = RealtimeFeed()
    bridge = PgNotifyBridge(feed, "postgresql+asyncpg://u:p@h/db", "booking_changes")
    payload = json.dumps({"table": "bookings", "type": "DELETE", "old": _row("b1")})
    bridge._handle_notification(None, 42, "booking_changes", payload)
    bridge._handle_notification(None, 42, "booking_changes", "garbage")

    seen = []
    feed.subscribe("bookings", seen.append)
    assert await feed.drain() == 1
    assert seen[0].event_type == "DELETE"


@pytest.mark.asyncio
async def test_worker_applies_queued_events_and_stops():
    feed = RealtimeFeed()
    cache, _, sync = _setup()
    stop = await start_realtime_sync_worker(feed, sync)

    feed.put_nowait(ChangeEvent("bookings", "UPDATE", new=_row("b2", status="confirmed")))
    for _ in range(50):
        if cache.find_booking("b2").status == "confirmed":
            break
        await asyncio.sleep(0.01)

    await stop()
    assert cache.find_booking("b2").status == "confirmed"

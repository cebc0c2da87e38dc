import pytest

from conftest import InMemoryBookingStore, make_booking

from crm.app.core.errors import InvalidStatusTransition
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.status_manager import BookingStatusManager

KEY = ("bookings", "all")


def _manager(store, notices, selected=None, on_success=None):
    cache = QueryCache()
    cache.write(KEY, list(store.rows.values()))
    selection = BookingSelection(selected)
    return BookingStatusManager(store, cache, selection, notify=notices, on_success=on_success)


@pytest.mark.parametrize(
    "current,new",
    [("pending", "completed"), ("pending", "in_progress"), ("completed", "cancelled"), ("no_show", "confirmed")],
)
def test_invalid_request_stages_nothing(notices, current, new):
    store = InMemoryBookingStore([make_booking("b1", status=current)])
    manager = _manager(store, notices)
    with pytest.raises(InvalidStatusTransition) as exc:
        manager.request_status_change("b1", current, new)
    assert exc.value.current_status == current
    assert manager.pending_status_change is None
    assert manager.show_confirm_dialog is False


def test_request_same_status_is_noop(notices):
    store = InMemoryBookingStore([make_booking("b1", status="pending")])
    manager = _manager(store, notices)
    assert manager.request_status_change("b1", "pending", "pending") is None
    assert manager.pending_status_change is None


def test_cancel_clears_pending_change(notices):
    store = InMemoryBookingStore([make_booking("b1", status="pending")])
    manager = _manager(store, notices)
    manager.request_status_change("b1", "pending", "confirmed")
    assert manager.show_confirm_dialog is True
    manager.cancel_status_change()
    assert manager.pending_status_change is None
    assert manager.show_confirm_dialog is False


@pytest.mark.asyncio
async def test_confirm_without_pending_change_returns_false(notices):
    manager = _manager(InMemoryBookingStore(), notices)
    assert await manager.confirm_status_change() is False
    assert notices.messages == []


@pytest.mark.asyncio
async def test_confirm_writes_and_updates_cache(notices):
    booking = make_booking("b1", status="pending")
    store = InMemoryBookingStore([booking])
    refreshed = []
    manager = _manager(store, notices, selected=booking, on_success=lambda: refreshed.append(True))

    seen_updating = []
    store.before_write = lambda: seen_updating.append(manager.is_updating)

    manager.request_status_change("b1", "pending", "confirmed")
    assert await manager.confirm_status_change() is True

    assert seen_updating == [True]
    assert manager.is_updating is False
    assert store.rows["b1"].status == "confirmed"
    assert manager.cache.find_booking("b1").status == "confirmed"
    assert manager.selection.selected.status == "confirmed"
    assert notices.messages == [("success", "Status changed to Confirmed")]
    assert refreshed == [True]


@pytest.mark.asyncio
async def test_failed_write_rolls_back_cache_and_selection(notices):
    booking = make_booking("b1", status="pending")
    store = InMemoryBookingStore([booking])
    store.fail_writes = True
    manager = _manager(store, notices, selected=booking)

    optimistic = []
    store.before_write = lambda: optimistic.append(manager.cache.find_booking("b1").status)

    manager.request_status_change("b1", "pending", "confirmed")
    assert await manager.confirm_status_change() is False

    assert optimistic == ["confirmed"]
    assert manager.cache.find_booking("b1").status == "pending"
    assert manager.selection.selected.status == "pending"
    assert manager.pending_status_change is None
    assert manager.is_updating is False
    assert notices.levels() == ["error"]


@pytest.mark.asyncio
async def test_rejected_then_valid_change(notices):
    store = InMemoryBookingStore([make_booking("b1", status="pending")])
    manager = _manager(store, notices)

    with pytest.raises(InvalidStatusTransition):
        manager.request_status_change("b1", "pending", "completed")
    assert store.calls_named("update") == []

    manager.request_status_change("b1", "pending", "confirmed")
    assert await manager.confirm_status_change() is True
    assert store.rows["b1"].status == "confirmed"
    assert len(store.calls_named("update")) == 1


@pytest.mark.asyncio
async def test_mark_as_paid_delegates_to_payments(notices):
    store = InMemoryBookingStore([make_booking("b1", payment_status="unpaid")])
    manager = _manager(store, notices)
    result = await manager.mark_as_paid("b1")
    assert result.success is True
    assert store.rows["b1"].payment_status == "paid"


@pytest.mark.asyncio
async def test_connection_failure_rolls_back_every_cached_list(notices):
    booking = make_booking("b1", status="pending", team_id="t1")
    other = make_booking("b2", status="pending", team_id="t1")
    store = InMemoryBookingStore([booking, other])
    store.fail_writes = True
    store.fail_exc = ConnectionResetError

    team_key = ("bookings", "team", "t1")
    manager = _manager(store, notices, selected=booking)
    manager.cache.write(team_key, [other, booking])

    manager.request_status_change("b1", "pending", "confirmed")
    assert await manager.confirm_status_change() is False

    for key in (KEY, team_key):
        assert {b.id: b.status for b in manager.cache.read(key)} == {"b1": "pending", "b2": "pending"}
    assert manager.selection.selected.status == "pending"
    assert manager.is_updating is False
    assert notices.levels() == ["error"]

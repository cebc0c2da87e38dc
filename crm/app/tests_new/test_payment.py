from dataclasses import replace
from datetime import date

import pytest

from conftest import BASE_TIME, InMemoryBookingStore, make_booking, make_group

from crm.app.core.errors import BookingNotFound, InvalidPaymentTransition
from crm.app.services import payment_services
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.payment_services import PaymentReconciliationService

KEY = ("bookings", "all")
TODAY = date(2026, 3, 15)


@pytest.fixture(autouse=True)
def fixed_today(monkeypatch):
    monkeypatch.setattr(payment_services, "business_today", lambda: TODAY)


def _service(store, notices, selected=None):
    cache = QueryCache()
    cache.write(KEY, list(store.rows.values()))
    return PaymentReconciliationService(store, cache=cache, selection=BookingSelection(selected), notify=notices)


@pytest.mark.asyncio
async def test_mark_group_as_paid_updates_active_members(notices):
    group = make_group("g1", 4, total_price=1000)
    group[3] = replace(group[3], deleted_at=BASE_TIME)
    store = InMemoryBookingStore(group + [make_booking("s1")])
    service = _service(store, notices)

    result = await service.mark_as_paid("g1-2", "transfer")

    assert result.success is True
    assert result.count == 3
    for booking_id in ("g1-1", "g1-2", "g1-3"):
        row = store.rows[booking_id]
        assert row.payment_status == "paid"
        assert row.payment_method == "transfer"
        assert row.payment_date == TODAY
        assert service.cache.find_booking(booking_id).payment_status == "paid"
    assert store.rows["g1-4"].payment_status == "unpaid"
    assert store.rows["s1"].payment_status == "unpaid"
    assert len(store.calls_named("update")) == 1
    assert notices.messages == [("success", "3 bookings marked as paid")]


@pytest.mark.asyncio
async def test_mark_standalone_as_paid(notices):
    store = InMemoryBookingStore([make_booking("s1", total_price=500)])
    service = _service(store, notices)

    result = await service.mark_as_paid("s1")

    assert result.count == 1
    assert store.rows["s1"].payment_method == "cash"
    assert store.rows["s1"].amount_paid is None
    assert notices.messages == [("success", "Payment marked as paid")]


@pytest.mark.asyncio
async def test_mark_as_paid_records_amount_when_given(notices):
    store = InMemoryBookingStore([make_booking("s1", total_price=500)])
    service = _service(store, notices)
    await service.mark_as_paid("s1", "promptpay", amount=450)
    assert store.rows["s1"].amount_paid == 450.0
    assert store.rows["s1"].payment_method == "promptpay"


@pytest.mark.asyncio
async def test_unsupported_method_is_rejected(notices):
    store = InMemoryBookingStore([make_booking("s1")])
    service = _service(store, notices)
    with pytest.raises(InvalidPaymentTransition):
        await service.mark_as_paid("s1", "bitcoin")
    assert store.calls_named("update") == []


@pytest.mark.asyncio
async def test_failed_write_rolls_back(notices):
    group = make_group("g1", 2)
    store = InMemoryBookingStore(group)
    store.fail_writes = True
    service = _service(store, notices, selected=group[0])

    result = await service.mark_as_paid("g1-1")

    assert result.success is False
    assert result.count == 0
    assert result.error == "simulated write failure"
    assert service.cache.find_booking("g1-1").payment_status == "unpaid"
    assert service.cache.find_booking("g1-2").payment_status == "unpaid"
    assert service.selection.selected.payment_status == "unpaid"
    assert notices.levels() == ["error"]


@pytest.mark.asyncio
async def test_read_failure_returns_failed_result(notices):
    store = InMemoryBookingStore([make_booking("s1")])
    store.fail_reads = True
    result = await _service(store, notices).verify_payment("s1")
    assert result.success is False
    assert notices.levels() == ["error"]


@pytest.mark.asyncio
async def test_missing_booking_raises(notices):
    with pytest.raises(BookingNotFound):
        await _service(InMemoryBookingStore(), notices).verify_payment("nope")


@pytest.mark.asyncio
async def test_verify_payment_marks_paid(notices):
    store = InMemoryBookingStore([make_booking("s1", payment_status="pending_verification")])
    result = await _service(store, notices).verify_payment("s1")
    assert result.success
    assert store.rows["s1"].payment_status == "paid"
    assert store.rows["s1"].payment_date == TODAY


@pytest.mark.asyncio
async def test_refund_requires_paid(notices):
    store = InMemoryBookingStore([make_booking("s1", payment_status="unpaid")])
    service = _service(store, notices)
    with pytest.raises(InvalidPaymentTransition):
        await service.request_refund("s1")
    with pytest.raises(InvalidPaymentTransition):
        await service.complete_refund("s1")
    with pytest.raises(InvalidPaymentTransition):
        await service.cancel_refund("s1")
    assert store.calls_named("update") == []


@pytest.mark.asyncio
async def test_refund_flow_for_group(notices):
    store = InMemoryBookingStore(make_group("g1", 2, payment_status="paid"))
    service = _service(store, notices)

    assert (await service.request_refund("g1-1")).count == 2
    assert {b.payment_status for b in store.rows.values()} == {"refund_pending"}

    await service.cancel_refund("g1-2")
    assert {b.payment_status for b in store.rows.values()} == {"paid"}

    await service.request_refund("g1-1")
    result = await service.complete_refund("g1-1")
    assert result.count == 2
    assert {b.payment_status for b in store.rows.values()} == {"refunded"}
    assert notices.messages[-1] == ("success", "2 bookings refunded successfully")


@pytest.mark.asyncio
async def test_on_success_callback_awaited(notices):
    store = InMemoryBookingStore([make_booking("s1")])
    calls = []

    async def _refresh():
        calls.append("refresh")

    service = PaymentReconciliationService(store, notify=notices, on_success=_refresh)
    await service.mark_as_paid("s1")
    assert calls == ["refresh"]


@pytest.mark.asyncio
async def test_group_id_without_recurring_flag_pays_whole_group(notices):
    members = [
        make_booking(f"g1-{seq}", recurring_group_id="g1", recurring_sequence=seq, is_recurring=False)
        for seq in (1, 2, 3)
    ]
    store = InMemoryBookingStore(members)

    result = await _service(store, notices).mark_as_paid("g1-1")

    assert result.count == 3
    assert {b.payment_status for b in store.rows.values()} == {"paid"}


@pytest.mark.asyncio
async def test_connection_failure_restores_all_cache_keys(notices):
    group = make_group("g1", 2, team_id="t1")
    store = InMemoryBookingStore(group)
    store.fail_writes = True
    store.fail_exc = ConnectionResetError
    service = _service(store, notices, selected=group[1])
    team_key = ("bookings", "team", "t1")
    service.cache.write(team_key, list(reversed(group)))

    result = await service.mark_as_paid("g1-1")

    assert result.success is False
    assert result.error == "simulated write failure"
    for key in (KEY, team_key):
        assert {b.payment_status for b in service.cache.read(key)} == {"unpaid"}
    assert service.selection.selected.payment_status == "unpaid"
    assert notices.levels() == ["error"]

from datetime import UTC, date, datetime

from conftest import make_booking

from crm.app.domain.records import MembershipPeriod
from crm.app.services.revenue_services import (
    calculate_booking_revenue,
    is_within_membership,
    staff_bookings,
    staff_revenue,
)


def _dt(month, day=1):
    return datetime(2026, month, day, tzinfo=UTC)


PERIODS = [
    MembershipPeriod(staff_id="s1", team_id="t1", joined_at=_dt(1), left_at=_dt(3)),
    MembershipPeriod(staff_id="s1", team_id="t1", joined_at=_dt(6), left_at=None),
    MembershipPeriod(staff_id="s2", team_id="t1", joined_at=None, left_at=None),
]


def test_team_revenue_split_by_member_count():
    booking = make_booking("b1", team_id="t1", total_price=900)
    assert calculate_booking_revenue(booking, {"t1": 3}) == 300
    assert calculate_booking_revenue(booking, {}) == 900
    assert calculate_booking_revenue(make_booking("b2", staff_id="s1", total_price=450), {"t1": 3}) == 450


def test_membership_windows_with_rejoin():
    own = [p for p in PERIODS if p.staff_id == "s1"]
    assert is_within_membership(make_booking("a", team_id="t1", created_at=_dt(2)), own)
    assert not is_within_membership(make_booking("b", team_id="t1", created_at=_dt(4)), own)
    assert is_within_membership(make_booking("c", team_id="t1", created_at=_dt(7)), own)
    assert not is_within_membership(make_booking("d", team_id="t2", created_at=_dt(2)), own)
    assert not is_within_membership(make_booking("e", staff_id="s1", created_at=_dt(2)), own)


def test_missing_joined_at_uses_default_start():
    own = [p for p in PERIODS if p.staff_id == "s2"]
    assert is_within_membership(make_booking("a", team_id="t1", created_at=datetime(2021, 5, 1, tzinfo=UTC)), own)
    assert not is_within_membership(make_booking("b", team_id="t1", created_at=datetime(2019, 5, 1, tzinfo=UTC)), own)


def test_booking_date_used_without_created_at():
    own = [p for p in PERIODS if p.staff_id == "s1"]
    booking = make_booking("a", team_id="t1", created_at=None, booking_date=date(2026, 2, 10))
    assert is_within_membership(booking, own)


def test_staff_bookings_and_revenue():
    bookings = [
        make_booking("direct", staff_id="s1", total_price=1000, payment_status="paid"),
        make_booking("team-in", team_id="t1", total_price=600, payment_status="paid", created_at=_dt(2)),
        make_booking("team-out", team_id="t1", total_price=600, payment_status="paid", created_at=_dt(4)),
        make_booking("unpaid", staff_id="s1", total_price=999, payment_status="unpaid"),
        make_booking("archived", staff_id="s1", total_price=500, payment_status="paid", deleted_at=_dt(5)),
        make_booking("other", staff_id="s2", total_price=700, payment_status="paid"),
    ]
    ids = [b.id for b in staff_bookings(bookings, "s1", PERIODS)]
    assert ids == ["direct", "team-in", "unpaid"]
    assert staff_revenue(bookings, "s1", PERIODS, {"t1": 3}) == 1200.0

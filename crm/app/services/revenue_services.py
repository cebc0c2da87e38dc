"""Staff revenue attribution.

Team bookings count towards a staff member only when the booking was created
during one of that member's stints in the team (a member can leave and
re-join, so there may be several periods per team).  Team revenue is split
evenly across the team's current member count.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime

from sqlalchemy import func, select

from crm.app.core.constants import DEFAULT_MEMBERSHIP_START
from crm.app.core.db import DB_ERRORS, get_session
from crm.app.core.errors import PersistenceError
from crm.app.domain.models import PaymentStatus, TeamMembership
from crm.app.domain.records import BookingRecord, MembershipPeriod, to_datetime

logger = logging.getLogger(__name__)

__all__ = [
    "MembershipRepo",
    "calculate_booking_revenue",
    "is_within_membership",
    "staff_bookings",
    "staff_revenue",
]

_DEFAULT_JOINED_AT = to_datetime(DEFAULT_MEMBERSHIP_START)


def calculate_booking_revenue(booking: BookingRecord, team_member_counts: Mapping[str, int]) -> float:
    price = float(booking.total_price or 0)
    if booking.team_id:
        members = team_member_counts.get(booking.team_id) or 1
        return price / members
    return price


def _booking_moment(booking: BookingRecord) -> datetime | None:
    return booking.created_at or to_datetime(booking.booking_date)


def is_within_membership(booking: BookingRecord, periods: Iterable[MembershipPeriod]) -> bool:
    """True when the booking falls inside any period for the booking's team."""
    if not booking.team_id:
        return False
    moment = _booking_moment(booking)
    if moment is None:
        return False
    for period in periods:
        if period.team_id != booking.team_id:
            continue
        joined = period.joined_at or _DEFAULT_JOINED_AT
        if joined is not None and moment < joined:
            continue
        if period.left_at is not None and moment > period.left_at:
            continue
        return True
    return False


def staff_bookings(
    bookings: Iterable[BookingRecord],
    staff_id: str,
    periods: Sequence[MembershipPeriod],
) -> list[BookingRecord]:
    """Non-archived bookings attributed to ``staff_id`` (direct or via a team)."""
    own_periods = [p for p in periods if p.staff_id == staff_id]
    out: list[BookingRecord] = []
    for b in bookings:
        if b.is_archived:
            continue
        if b.staff_id == staff_id or is_within_membership(b, own_periods):
            out.append(b)
    return out


def staff_revenue(
    bookings: Iterable[BookingRecord],
    staff_id: str,
    periods: Sequence[MembershipPeriod],
    team_member_counts: Mapping[str, int],
) -> float:
    total = 0.0
    for b in staff_bookings(bookings, staff_id, periods):
        if b.payment_status == PaymentStatus.PAID.value:
            total += calculate_booking_revenue(b, team_member_counts)
    return round(total, 2)


class MembershipRepo:
    """Read access to ``team_memberships``."""

    @staticmethod
    async def periods_for_staff(staff_id: str) -> list[MembershipPeriod]:
        stmt = select(TeamMembership).where(TeamMembership.staff_id == staff_id)
        try:
            async with get_session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except DB_ERRORS as exc:
            logger.error("Loading memberships for staff %s failed: %s", staff_id, exc)
            raise PersistenceError(str(exc)) from exc
        return [
            MembershipPeriod(
                staff_id=str(r.staff_id),
                team_id=str(r.team_id),
                joined_at=to_datetime(r.joined_at),
                left_at=to_datetime(r.left_at),
            )
            for r in rows
        ]

    @staticmethod
    async def team_member_counts(team_ids: Iterable[str]) -> dict[str, int]:
        """Current (not yet left) member count per team."""
        ids = sorted({str(t) for t in team_ids if t})
        if not ids:
            return {}
        stmt = (
            select(TeamMembership.team_id, func.count(func.distinct(TeamMembership.staff_id)))
            .where(TeamMembership.team_id.in_(ids), TeamMembership.left_at.is_(None))
            .group_by(TeamMembership.team_id)
        )
        try:
            async with get_session() as session:
                rows = (await session.execute(stmt)).all()
        except DB_ERRORS as exc:
            logger.error("Loading team member counts failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        return {str(team_id): int(count) for team_id, count in rows}

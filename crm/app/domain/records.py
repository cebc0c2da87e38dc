"""Immutable booking records and small value objects.

Rows arrive from several shapes (ORM instances, SQLAlchemy ``Row`` objects,
realtime JSON payloads, plain dicts in tests).  ``normalize_booking_row``
turns any of them into a frozen ``BookingRecord`` so caches can share
records and snapshots can be shallow copies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime, time
from typing import Any, Mapping

logger = logging.getLogger(__name__)

__all__ = [
    "BookingRecord",
    "PendingStatusChange",
    "BatchOutcome",
    "PaymentResult",
    "MembershipPeriod",
    "RecurringGroup",
    "booking_from_mapping",
    "normalize_booking_row",
    "record_to_row",
    "merge_values",
    "to_datetime",
]


@dataclass(frozen=True)
class BookingRecord:
    id: str
    status: str = "pending"
    payment_status: str = "unpaid"
    payment_method: str | None = None
    amount_paid: float | None = None
    payment_date: date | None = None
    payment_slip_url: str | None = None
    total_price: float = 0.0
    booking_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    service_name: str | None = None
    service_type: str | None = None
    staff_id: str | None = None
    team_id: str | None = None
    is_recurring: bool = False
    recurring_group_id: str | None = None
    recurring_sequence: int | None = None
    recurring_total: int | None = None
    recurring_pattern: str | None = None
    parent_booking_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    def __post_init__(self) -> None:
        if self.staff_id and self.team_id:
            raise ValueError(f"Booking {self.id} cannot be assigned to both staff and team")

    @property
    def is_archived(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_grouped(self) -> bool:
        """True when the booking belongs to a recurring group."""
        return bool(self.is_recurring and self.recurring_group_id)


_FIELD_NAMES = tuple(f.name for f in fields(BookingRecord))


@dataclass(frozen=True)
class PendingStatusChange:
    booking_id: str
    current_status: str
    new_status: str


@dataclass(frozen=True)
class BatchOutcome:
    """Result of a best-effort batch: each id is processed independently."""

    requested: int
    succeeded: int
    failed_ids: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.succeeded == self.requested

    @property
    def is_partial(self) -> bool:
        return 0 < self.succeeded < self.requested

    @property
    def failed(self) -> int:
        return len(self.failed_ids)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    count: int = 0
    error: str | None = None


@dataclass(frozen=True)
class MembershipPeriod:
    staff_id: str
    team_id: str
    joined_at: datetime | None = None
    left_at: datetime | None = None


@dataclass
class RecurringGroup:
    """Derived view over the members of one recurring series."""

    group_id: str
    pattern: str | None = None
    bookings: list[BookingRecord] = field(default_factory=list)
    total_bookings: int = 0
    completed: int = 0
    confirmed: int = 0
    in_progress: int = 0
    cancelled: int = 0
    no_show: int = 0
    upcoming: int = 0


def _to_str(v: Any) -> str | None:
    if v is None:
        return None
    # Enum members stored on ORM rows
    v = getattr(v, "value", v)
    s = str(v)
    return s if s != "" else None


def _to_int(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _to_float(v: Any) -> float | None:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _to_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "t", "yes"}
    return bool(v)


def to_datetime(v: Any) -> datetime | None:
    """Parse a timestamp; naive values are taken as UTC."""
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, date):
        dt = datetime.combine(v, time.min)
    else:
        dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _to_date(v: Any) -> date | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def _to_time(v: Any) -> time | None:
    if v is None or v == "":
        return None
    if isinstance(v, time):
        return v
    return time.fromisoformat(str(v))


def booking_from_mapping(data: Mapping[str, Any]) -> BookingRecord:
    booking_id = _to_str(data.get("id") or data.get("booking_id"))
    if booking_id is None:
        raise ValueError("Booking row without id")
    return BookingRecord(
        id=booking_id,
        status=_to_str(data.get("status")) or "pending",
        payment_status=_to_str(data.get("payment_status")) or "unpaid",
        payment_method=_to_str(data.get("payment_method")),
        amount_paid=_to_float(data.get("amount_paid")),
        payment_date=_to_date(data.get("payment_date")),
        payment_slip_url=_to_str(data.get("payment_slip_url")),
        total_price=_to_float(data.get("total_price")) or 0.0,
        booking_date=_to_date(data.get("booking_date")),
        start_time=_to_time(data.get("start_time")),
        end_time=_to_time(data.get("end_time")),
        customer_id=_to_str(data.get("customer_id")),
        customer_name=_to_str(data.get("customer_name")),
        service_name=_to_str(data.get("service_name")),
        service_type=_to_str(data.get("service_type")),
        staff_id=_to_str(data.get("staff_id")),
        team_id=_to_str(data.get("team_id")),
        is_recurring=_to_bool(data.get("is_recurring")),
        recurring_group_id=_to_str(data.get("recurring_group_id")),
        recurring_sequence=_to_int(data.get("recurring_sequence")),
        recurring_total=_to_int(data.get("recurring_total")),
        recurring_pattern=_to_str(data.get("recurring_pattern")),
        parent_booking_id=_to_str(data.get("parent_booking_id")),
        created_at=to_datetime(data.get("created_at")),
        updated_at=to_datetime(data.get("updated_at")),
        deleted_at=to_datetime(data.get("deleted_at")),
        deleted_by=_to_str(data.get("deleted_by")),
    )


def normalize_booking_row(row: Any) -> BookingRecord:
    """Normalize diverse row shapes (ORM, Row, mapping) into a BookingRecord."""
    if isinstance(row, BookingRecord):
        return row
    if isinstance(row, Mapping):
        return booking_from_mapping(row)
    if hasattr(row, "_mapping"):
        return booking_from_mapping(dict(row._mapping))  # type: ignore[attr-defined]
    return booking_from_mapping({name: getattr(row, name, None) for name in _FIELD_NAMES})


def record_to_row(record: BookingRecord) -> dict[str, Any]:
    return {name: getattr(record, name) for name in _FIELD_NAMES}


def merge_values(record: BookingRecord, values: Mapping[str, Any]) -> BookingRecord:
    """Return a copy of ``record`` with ``values`` applied (unknown keys ignored)."""
    known = {k: v for k, v in values.items() if k in _FIELD_NAMES and k != "id"}
    if not known:
        return record
    return booking_from_mapping({**record_to_row(record), **known})

from datetime import UTC, date, datetime, time as _time
from enum import Enum as _Enum

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Index, Integer, Numeric, String, Text, Time
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class BookingStatus(str, _Enum):  # Values match stored labels
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, _Enum):
    UNPAID = "unpaid"
    PENDING_VERIFICATION = "pending_verification"
    PAID = "paid"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class PaymentMethod(str, _Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CREDIT_CARD = "credit_card"
    PROMPTPAY = "promptpay"


class RecurringPattern(str, _Enum):
    AUTO_MONTHLY = "auto-monthly"
    CUSTOM = "custom"


class RecurringScope(str, _Enum):
    THIS_ONLY = "this_only"
    THIS_AND_FUTURE = "this_and_future"
    ALL = "all"


def normalize_booking_status(value: str | BookingStatus | None) -> BookingStatus | None:
    """Return a BookingStatus enum when possible (accepts strings/enum values)."""
    if isinstance(value, BookingStatus):
        return value
    if isinstance(value, str):
        cleaned = value.strip().lower().replace("-", "_")
        try:
            return BookingStatus(cleaned)
        except ValueError:
            return None
    return None


def normalize_payment_status(value: str | PaymentStatus | None) -> PaymentStatus | None:
    if isinstance(value, PaymentStatus):
        return value
    if isinstance(value, str):
        try:
            return PaymentStatus(value.strip().lower())
        except ValueError:
            return None
    return None


TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }
)

# Terminal states reached by aborting the service; confirmation must warn
IRREVERSIBLE_STATUSES = frozenset(
    {
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }
)

ACTIVE_STATUSES = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
    }
)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        # Staff and team assignment are mutually exclusive
        CheckConstraint("NOT (staff_id IS NOT NULL AND team_id IS NOT NULL)", name="ck_bookings_single_assignee"),
        CheckConstraint(
            "NOT is_recurring OR (recurring_group_id IS NOT NULL AND recurring_sequence IS NOT NULL)",
            name="ck_bookings_recurring_fields",
        ),
        Index("ix_bookings_group_sequence", "recurring_group_id", "recurring_sequence", unique=True),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    service_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    staff_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    team_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(32), default=BookingStatus.PENDING.value, nullable=False)
    payment_status: Mapped[str] = mapped_column(String(32), default=PaymentStatus.UNPAID.value, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount_paid: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_slip_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_price: Mapped[float] = mapped_column(Numeric(12, 2), default=0, nullable=False)

    booking_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    start_time: Mapped[_time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[_time | None] = mapped_column(Time, nullable=True)

    # Recurring metadata; recurring_group_id NULL means standalone
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_group_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    recurring_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_pattern: Mapped[str | None] = mapped_column(String(32), nullable=True)
    parent_booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )
    # Soft delete (archive) pair
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)


class TeamMembership(Base):
    __tablename__ = "team_memberships"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[str] = mapped_column(String(36), index=True)
    staff_id: Mapped[str] = mapped_column(String(36), index=True)
    # A staff member may re-join a team; each stint is a separate row
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


__all__ = [
    "Base",
    "Booking",
    "TeamMembership",
    "BookingStatus",
    "PaymentStatus",
    "PaymentMethod",
    "RecurringPattern",
    "RecurringScope",
    "normalize_booking_status",
    "normalize_payment_status",
    "TERMINAL_STATUSES",
    "IRREVERSIBLE_STATUSES",
    "ACTIVE_STATUSES",
]

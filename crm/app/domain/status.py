"""Booking status workflow: transition table, confirmation prompts and labels.

The table is forward-only; terminal statuses have no outgoing transitions.
Callers may pass either ``BookingStatus`` members or raw strings and always
receive plain string values back.
"""

from __future__ import annotations

import logging

from .models import (
    IRREVERSIBLE_STATUSES,
    BookingStatus,
    PaymentStatus,
    normalize_booking_status,
)

logger = logging.getLogger(__name__)

__all__ = [
    "STATUS_TRANSITIONS",
    "STATUS_LABELS",
    "PAYMENT_STATUS_LABELS",
    "get_valid_transitions",
    "get_available_statuses",
    "is_valid_transition",
    "is_irreversible",
    "get_status_transition_message",
    "get_status_label",
    "get_payment_status_label",
    "normalize_booking_status",
]

STATUS_TRANSITIONS: dict[BookingStatus, tuple[BookingStatus, ...]] = {
    BookingStatus.PENDING: (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    BookingStatus.CONFIRMED: (
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    ),
    BookingStatus.IN_PROGRESS: (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    BookingStatus.COMPLETED: (),
    BookingStatus.CANCELLED: (),
    BookingStatus.NO_SHOW: (),
}

STATUS_LABELS: dict[str, str] = {
    BookingStatus.PENDING.value: "Pending",
    BookingStatus.CONFIRMED.value: "Confirmed",
    BookingStatus.IN_PROGRESS.value: "In Progress",
    BookingStatus.COMPLETED.value: "Completed",
    BookingStatus.CANCELLED.value: "Cancelled",
    BookingStatus.NO_SHOW.value: "No Show",
}

PAYMENT_STATUS_LABELS: dict[str, str] = {
    PaymentStatus.UNPAID.value: "Unpaid",
    PaymentStatus.PENDING_VERIFICATION.value: "Pending Verification",
    PaymentStatus.PAID.value: "Paid",
    PaymentStatus.REFUND_PENDING.value: "Refund Pending",
    PaymentStatus.REFUNDED.value: "Refunded",
}

_CANCEL_MSG = "Cancel this booking? This action cannot be undone."
_NO_SHOW_MSG = "Mark this booking as no-show? This action cannot be undone."

_TRANSITION_MESSAGES: dict[tuple[str, str], str] = {
    ("pending", "confirmed"): "Confirm this booking?",
    ("pending", "cancelled"): _CANCEL_MSG,
    ("confirmed", "in_progress"): "Mark this booking as in progress?",
    ("confirmed", "cancelled"): _CANCEL_MSG,
    ("confirmed", "no_show"): _NO_SHOW_MSG,
    ("in_progress", "completed"): "Mark this booking as completed?",
    ("in_progress", "cancelled"): _CANCEL_MSG,
}


def _key(status: str | BookingStatus | None) -> str:
    st = normalize_booking_status(status)
    if st is not None:
        return st.value
    return "" if status is None else str(status)


def get_valid_transitions(status: str | BookingStatus | None) -> list[str]:
    """Statuses reachable from ``status`` in one step (excluding itself).

    Unknown statuses have no transitions.
    """
    st = normalize_booking_status(status)
    if st is None:
        logger.debug("No transitions for unknown status %r", status)
        return []
    return [s.value for s in STATUS_TRANSITIONS.get(st, ())]


def get_available_statuses(status: str | BookingStatus | None) -> list[str]:
    """Options for a status picker: the current status first, then valid targets."""
    return [_key(status), *get_valid_transitions(status)]


def is_valid_transition(current: str | BookingStatus | None, new: str | BookingStatus | None) -> bool:
    return _key(new) in get_valid_transitions(current)


def is_irreversible(status: str | BookingStatus | None) -> bool:
    return normalize_booking_status(status) in IRREVERSIBLE_STATUSES


def get_status_label(status: str | BookingStatus | None) -> str:
    key = _key(status)
    return STATUS_LABELS.get(key, key)


def get_payment_status_label(status: str | PaymentStatus | None) -> str:
    key = getattr(status, "value", status) or PaymentStatus.UNPAID.value
    return PAYMENT_STATUS_LABELS.get(str(key), str(key))


def get_status_transition_message(current: str | BookingStatus | None, new: str | BookingStatus | None) -> str:
    """Confirmation prompt for a status change."""
    message = _TRANSITION_MESSAGES.get((_key(current), _key(new)))
    if message:
        return message
    return f"Change status from {get_status_label(current)} to {get_status_label(new)}?"

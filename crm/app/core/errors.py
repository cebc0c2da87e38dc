from __future__ import annotations
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

__all__ = [
    "BookingError",
    "InvalidStatusTransition",
    "InvalidPaymentTransition",
    "UngroupedBookingError",
    "InvalidScopeError",
    "BookingNotFound",
    "PersistenceError",
    "Notifier",
    "emit_notice",
    "handle_persistence_error",
    "user_message",
    "error_text",
]

# (level, message) -> None; level is one of "success", "warning", "error"
Notifier = Callable[[str, str], Union[None, Awaitable[None]]]


class BookingError(Exception):
    """Base exception for booking-core errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class InvalidStatusTransition(BookingError):
    """Requested status change is not in the transition table."""

    def __init__(self, current_status: str, new_status: str, allowed: list[str]) -> None:
        flow = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f'Cannot change from "{current_status}" to "{new_status}". '
            f"Please follow the workflow: {flow}",
            details={"current_status": current_status, "new_status": new_status, "allowed": list(allowed)},
        )
        self.current_status = current_status
        self.new_status = new_status
        self.allowed = list(allowed)


class InvalidPaymentTransition(BookingError):
    """Payment status pre-condition failed (e.g. refunding an unpaid booking)."""


class UngroupedBookingError(BookingError):
    """A multi-booking scope was requested for a booking without a recurring group."""

    def __init__(self, booking_id: str, scope: str) -> None:
        super().__init__(
            "Booking is not part of a recurring group",
            details={"booking_id": booking_id, "scope": scope},
        )
        self.booking_id = booking_id
        self.scope = scope


class InvalidScopeError(BookingError):
    """Unknown recurring scope value."""


class BookingNotFound(BookingError):
    """Booking id does not resolve to a visible row."""

    def __init__(self, booking_id: str) -> None:
        super().__init__("Booking not found", details={"booking_id": booking_id})
        self.booking_id = booking_id


class PersistenceError(BookingError):
    """A read or write against the persistence collaborator failed."""


_TITLES: dict[type[BookingError], str] = {
    InvalidStatusTransition: "Invalid Status Transition",
    InvalidPaymentTransition: "Invalid Payment Action",
    UngroupedBookingError: "Not a Recurring Booking",
    InvalidScopeError: "Invalid Scope",
    BookingNotFound: "Booking Not Found",
    PersistenceError: "Update Failed",
}


def user_message(error: BaseException, context: str = "booking") -> tuple[str, str]:
    """Map an error to a (title, description) pair suitable for the operator."""
    if isinstance(error, PersistenceError):
        return _TITLES[PersistenceError], f"Could not save the {context}. Please try again."
    if isinstance(error, BookingError):
        return _TITLES.get(type(error), "Error"), error.message
    return "Error", f"Unexpected error while updating the {context}."


def error_text(error: BaseException) -> str:
    if isinstance(error, BookingError):
        return error.message
    return str(error) or type(error).__name__


async def emit_notice(notify: Notifier | None, level: str, message: str) -> None:
    """Forward a message to the notifier; notifier failures are logged, not raised."""
    if notify is None:
        return
    try:
        result = notify(level, message)
        if inspect.isawaitable(result):
            await result
    except Exception as notify_err:
        logger.error("Notifier failed for %s message %r: %s", level, message, notify_err)


async def handle_persistence_error(
    error: Exception,
    context: str = "booking",
    notify: Notifier | None = None,
) -> tuple[str, str]:
    """Log a persistence failure and surface it to the operator.

    Args:
        error: The exception raised by the persistence collaborator.
        context: Human-readable operation context (e.g. "booking", "payment").
        notify: Optional notifier receiving the user-facing message.

    Returns:
        The (title, description) pair that was surfaced.
    """
    logger.error("Persistence error in %s: %s", context, error)
    title, description = user_message(error, context)
    await emit_notice(notify, "error", f"{title}: {description}")
    return title, description

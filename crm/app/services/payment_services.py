"""Payment reconciliation for single bookings and recurring series.

A recurring series is invoiced as one payment, so every payment action on a
grouped booking applies to all non-archived members of its group in a single
persistence update.  Cache and selected-booking changes are applied
optimistically and rolled back when the write fails.
"""

from __future__ import annotations

import inspect
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, Union

import crm.config as cfg
from crm.app.core.errors import (
    BookingNotFound,
    InvalidPaymentTransition,
    Notifier,
    emit_notice,
    error_text,
    handle_persistence_error,
)
from crm.app.domain.models import PaymentMethod, PaymentStatus
from crm.app.domain.records import BookingRecord, PaymentResult, merge_values
from crm.app.domain.status import get_payment_status_label
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.persistence import BookingFilter, BookingStore, by_group_id, by_id, not_archived

logger = logging.getLogger(__name__)

__all__ = ["PaymentReconciliationService", "business_today"]

SuccessCallback = Callable[[], Union[None, Awaitable[None]]]

# action -> (single-booking message, group message template)
_MESSAGES: dict[str, tuple[str, str]] = {
    "mark_as_paid": ("Payment marked as paid", "{n} bookings marked as paid"),
    "verify_payment": ("Payment verified successfully", "{n} bookings verified successfully"),
    "request_refund": ("Refund requested successfully", "Refund requested for {n} bookings"),
    "complete_refund": ("Refund completed successfully", "{n} bookings refunded successfully"),
    "cancel_refund": ("Refund cancelled successfully", "Refund cancelled for {n} bookings"),
}


def business_today() -> date:
    """Today's date in the configured business timezone."""
    return datetime.now(cfg.get_local_tz()).date()


def _normalize_method(method: str | PaymentMethod | None) -> str:
    raw = getattr(method, "value", method) or cfg.get_setting("default_payment_method", "cash")
    try:
        return PaymentMethod(str(raw).strip().lower()).value
    except ValueError:
        raise InvalidPaymentTransition(
            f"Unsupported payment method: {raw}", details={"payment_method": str(raw)}
        ) from None


class PaymentReconciliationService:
    def __init__(
        self,
        store: BookingStore,
        cache: QueryCache | None = None,
        selection: BookingSelection | None = None,
        notify: Notifier | None = None,
        on_success: Optional[SuccessCallback] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.selection = selection
        self.notify = notify
        self.on_success = on_success

    async def mark_as_paid(
        self,
        booking_id: str,
        method: str | PaymentMethod | None = PaymentMethod.CASH,
        amount: float | None = None,
    ) -> PaymentResult:
        values: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "payment_method": _normalize_method(method),
            "payment_date": business_today(),
        }
        if amount is not None:
            values["amount_paid"] = amount
        return await self._apply("mark_as_paid", booking_id, values, None)

    async def verify_payment(self, booking_id: str) -> PaymentResult:
        values = {"payment_status": PaymentStatus.PAID.value, "payment_date": business_today()}
        return await self._apply("verify_payment", booking_id, values, None)

    async def request_refund(self, booking_id: str) -> PaymentResult:
        values = {"payment_status": PaymentStatus.REFUND_PENDING.value}
        return await self._apply("request_refund", booking_id, values, {PaymentStatus.PAID.value})

    async def complete_refund(self, booking_id: str) -> PaymentResult:
        values = {"payment_status": PaymentStatus.REFUNDED.value}
        return await self._apply("complete_refund", booking_id, values, {PaymentStatus.REFUND_PENDING.value})

    async def cancel_refund(self, booking_id: str) -> PaymentResult:
        values = {"payment_status": PaymentStatus.PAID.value}
        return await self._apply("cancel_refund", booking_id, values, {PaymentStatus.REFUND_PENDING.value})

    async def _load(self, booking_id: str) -> BookingRecord:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    async def _apply(
        self,
        action: str,
        booking_id: str,
        values: dict[str, Any],
        allowed_from: set[str] | None,
    ) -> PaymentResult:
        try:
            booking = await self._load(booking_id)
        except BookingNotFound:
            raise
        except Exception as exc:
            await handle_persistence_error(exc, "payment", self.notify)
            return PaymentResult(success=False, count=0, error=error_text(exc))

        if allowed_from is not None and booking.payment_status not in allowed_from:
            expected = " or ".join(get_payment_status_label(s) for s in sorted(allowed_from))
            raise InvalidPaymentTransition(
                f"Cannot {action.replace('_', ' ')}: payment is "
                f"{get_payment_status_label(booking.payment_status)}, expected {expected}",
                details={"booking_id": booking.id, "payment_status": booking.payment_status},
            )

        group_id = booking.recurring_group_id
        filters: tuple[BookingFilter, ...]
        if group_id:
            filters = (by_group_id(group_id), not_archived())
        else:
            filters = (by_id(booking.id),)

        def _targets(record: BookingRecord) -> bool:
            if group_id:
                return record.recurring_group_id == group_id and not record.is_archived
            return record.id == booking.id

        snapshot = self.cache.snapshot() if self.cache is not None else None
        previous_selected = self.selection.selected if self.selection is not None else None
        if self.cache is not None:
            self.cache.update_bookings(lambda b: merge_values(b, values) if _targets(b) else b)
        if self.selection is not None and previous_selected is not None and _targets(previous_selected):
            self.selection.set(merge_values(previous_selected, values))

        try:
            updated_ids = await self.store.update(values, *filters)
        except Exception as exc:
            if self.cache is not None and snapshot is not None:
                self.cache.restore(snapshot)
            if self.selection is not None and previous_selected is not None:
                self.selection.set(previous_selected)
            await handle_persistence_error(exc, "payment", self.notify)
            return PaymentResult(success=False, count=0, error=error_text(exc))

        count = len(updated_ids) if group_id else 1
        single_msg, group_msg = _MESSAGES[action]
        message = group_msg.format(n=count) if count > 1 else single_msg
        logger.info("%s booking=%s group=%s count=%d", action, booking.id, group_id, count)
        await emit_notice(self.notify, "success", message)
        if self.on_success is not None:
            result = self.on_success()
            if inspect.isawaitable(result):
                await result
        return PaymentResult(success=True, count=count)

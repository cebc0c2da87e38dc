"""Booking lifecycle manager.

Two-step status changes: ``request_status_change`` validates against the
transition table and stages a ``PendingStatusChange`` for the operator to
confirm; ``confirm_status_change`` applies it optimistically to the query
cache and the selected booking, writes through the store, and restores the
cache snapshot if the write fails.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Union

from crm.app.core.errors import (
    InvalidStatusTransition,
    Notifier,
    emit_notice,
    handle_persistence_error,
)
from crm.app.domain.models import BookingStatus, PaymentMethod
from crm.app.domain.records import PaymentResult, PendingStatusChange
from crm.app.domain.status import (
    get_available_statuses,
    get_status_label,
    get_status_transition_message,
    get_valid_transitions,
    is_valid_transition,
)
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.payment_services import PaymentReconciliationService
from crm.app.services.persistence import BookingStore, by_id

logger = logging.getLogger(__name__)

__all__ = ["BookingStatusManager"]

SuccessCallback = Callable[[], Union[None, Awaitable[None]]]


def _value(status: str | BookingStatus) -> str:
    return str(getattr(status, "value", status))


class BookingStatusManager:
    get_valid_transitions = staticmethod(get_valid_transitions)
    get_available_statuses = staticmethod(get_available_statuses)
    get_status_transition_message = staticmethod(get_status_transition_message)
    get_status_label = staticmethod(get_status_label)

    def __init__(
        self,
        store: BookingStore,
        cache: QueryCache,
        selection: BookingSelection | None = None,
        notify: Notifier | None = None,
        on_success: Optional[SuccessCallback] = None,
        payments: PaymentReconciliationService | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.selection = selection or BookingSelection()
        self.notify = notify
        self.on_success = on_success
        self.payments = payments or PaymentReconciliationService(
            store, cache=cache, selection=self.selection, notify=notify, on_success=on_success
        )
        self.pending_status_change: PendingStatusChange | None = None
        self.show_confirm_dialog = False
        self.is_updating = False

    def request_status_change(
        self,
        booking_id: str,
        current_status: str | BookingStatus,
        new_status: str | BookingStatus,
    ) -> PendingStatusChange | None:
        """Stage a change for confirmation.

        Returns None when the status is unchanged.  Raises
        InvalidStatusTransition when the pair is not in the transition table;
        nothing is staged in either case.
        """
        current, new = _value(current_status), _value(new_status)
        if current == new:
            return None
        if not is_valid_transition(current, new):
            raise InvalidStatusTransition(current, new, get_valid_transitions(current))
        change = PendingStatusChange(booking_id=booking_id, current_status=current, new_status=new)
        self.pending_status_change = change
        self.show_confirm_dialog = True
        logger.debug("Staged status change %s: %s -> %s", booking_id, current, new)
        return change

    def cancel_status_change(self) -> None:
        self.show_confirm_dialog = False
        self.pending_status_change = None

    async def confirm_status_change(self) -> bool:
        change = self.pending_status_change
        if change is None:
            return False
        self.show_confirm_dialog = False
        self.pending_status_change = None
        self.is_updating = True

        snapshot = self.cache.snapshot()
        self.cache.update_bookings(
            lambda b: replace(b, status=change.new_status) if b.id == change.booking_id else b
        )
        previous = self.selection.selected
        if previous is not None and previous.id == change.booking_id:
            self.selection.set(replace(previous, status=change.new_status))

        try:
            await self.store.update({"status": change.new_status}, by_id(change.booking_id))
        except Exception as exc:
            self.cache.restore(snapshot)
            if previous is not None and previous.id == change.booking_id:
                self.selection.set(replace(previous, status=change.current_status))
            await handle_persistence_error(exc, "booking", self.notify)
            return False
        finally:
            self.is_updating = False

        logger.info("Booking %s status %s -> %s", change.booking_id, change.current_status, change.new_status)
        await emit_notice(self.notify, "success", f"Status changed to {get_status_label(change.new_status)}")
        if self.on_success is not None:
            result = self.on_success()
            if inspect.isawaitable(result):
                await result
        return True

    async def mark_as_paid(
        self,
        booking_id: str,
        method: str | PaymentMethod | None = PaymentMethod.CASH,
        amount: float | None = None,
    ) -> PaymentResult:
        return await self.payments.mark_as_paid(booking_id, method, amount)

from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import crm.config as cfg
from crm.app.core.errors import (
    BookingError,
    InvalidScopeError,
    Notifier,
    PersistenceError,
    UngroupedBookingError,
    emit_notice,
    error_text,
    handle_persistence_error,
)
from crm.app.domain.models import BookingStatus, RecurringPattern, RecurringScope
from crm.app.domain.records import BatchOutcome, BookingRecord, RecurringGroup
from crm.app.services.persistence import (
    BookingStore,
    archived_only,
    by_group_id,
    by_id,
    by_id_in,
    not_archived,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ALLOWED_FREQUENCIES",
    "GroupedBookings",
    "RecurringCreation",
    "RecurringBookingService",
    "is_recurring_booking",
    "sort_recurring_group",
    "find_parent_booking",
    "count_bookings_by_status",
    "build_recurring_group",
    "group_bookings",
    "coerce_scope",
    "resolve_scope_ids",
    "generate_auto_schedule_dates",
    "validate_recurring_dates",
    "is_pattern_compatible_with_frequency",
    "get_recurring_pattern_label",
]

ALLOWED_FREQUENCIES: tuple[int, ...] = (1, 2, 4, 8)

# Fields that identify a booking inside its series; scope updates must not move them
_SERIES_FIELDS = frozenset({"id", "recurring_group_id", "recurring_sequence", "parent_booking_id"})

_PATTERN_LABELS = {
    RecurringPattern.AUTO_MONTHLY.value: "Monthly",
    RecurringPattern.CUSTOM.value: "Custom",
}


# ---------------------------------------------------------------------------
# Resolver (pure)
# ---------------------------------------------------------------------------


@dataclass
class GroupedBookings:
    groups: list[RecurringGroup] = field(default_factory=list)
    standalone: list[BookingRecord] = field(default_factory=list)


def is_recurring_booking(booking: BookingRecord) -> bool:
    return bool(booking.is_recurring and booking.recurring_group_id)


def sort_recurring_group(bookings: Iterable[BookingRecord]) -> list[BookingRecord]:
    return sorted(bookings, key=lambda b: b.recurring_sequence or 0)


def find_parent_booking(bookings: Iterable[BookingRecord]) -> BookingRecord | None:
    for b in bookings:
        if b.recurring_sequence == 1:
            return b
    return None


def count_bookings_by_status(bookings: Sequence[BookingRecord]) -> dict[str, int]:
    """Per-status counts; ``upcoming`` collects pending and unrecognised statuses."""
    counts = {
        "completed": 0,
        "confirmed": 0,
        "in_progress": 0,
        "cancelled": 0,
        "no_show": 0,
        "upcoming": 0,
        "total": len(bookings),
    }
    resolved = {
        BookingStatus.COMPLETED.value,
        BookingStatus.CONFIRMED.value,
        BookingStatus.IN_PROGRESS.value,
        BookingStatus.CANCELLED.value,
        BookingStatus.NO_SHOW.value,
    }
    for b in bookings:
        if b.status in resolved:
            counts[b.status] += 1
        else:
            counts["upcoming"] += 1
    return counts


def build_recurring_group(group_id: str, members: Iterable[BookingRecord], pattern: str | None = None) -> RecurringGroup:
    ordered = sort_recurring_group(members)
    counts = count_bookings_by_status(ordered)
    if pattern is None and ordered:
        pattern = ordered[0].recurring_pattern
    return RecurringGroup(
        group_id=group_id,
        pattern=pattern,
        bookings=ordered,
        total_bookings=counts["total"],
        completed=counts["completed"],
        confirmed=counts["confirmed"],
        in_progress=counts["in_progress"],
        cancelled=counts["cancelled"],
        no_show=counts["no_show"],
        upcoming=counts["upcoming"],
    )


def group_bookings(
    bookings: Iterable[BookingRecord],
    include: Callable[[BookingRecord], bool] | None = None,
) -> GroupedBookings:
    """Partition bookings into recurring groups and standalone bookings.

    Groups are discovered from the full input and keep first-seen order.  When
    ``include`` is given only matching bookings become members or standalone
    entries, but every discovered group is still reported (possibly empty).
    """
    members: dict[str, list[BookingRecord]] = {}
    patterns: dict[str, str | None] = {}
    standalone: list[BookingRecord] = []
    for b in bookings:
        keep = include is None or include(b)
        if is_recurring_booking(b):
            gid = str(b.recurring_group_id)
            bucket = members.setdefault(gid, [])
            patterns.setdefault(gid, b.recurring_pattern)
            if keep:
                bucket.append(b)
        elif keep:
            standalone.append(b)
    groups = [build_recurring_group(gid, items, patterns.get(gid)) for gid, items in members.items()]
    return GroupedBookings(groups=groups, standalone=standalone)


# ---------------------------------------------------------------------------
# Scope resolution (pure)
# ---------------------------------------------------------------------------


def coerce_scope(scope: str | RecurringScope) -> RecurringScope:
    try:
        return RecurringScope(getattr(scope, "value", scope))
    except ValueError:
        raise InvalidScopeError(f"Invalid scope: {scope}", details={"scope": str(scope)}) from None


def resolve_scope_ids(
    booking: BookingRecord,
    scope: str | RecurringScope,
    members: Iterable[BookingRecord],
) -> list[str]:
    """Booking ids covered by ``scope``; archived members are never included."""
    sc = coerce_scope(scope)
    if sc is RecurringScope.THIS_ONLY:
        return [booking.id]
    if not booking.recurring_group_id:
        raise UngroupedBookingError(booking.id, sc.value)
    active = [
        m for m in sort_recurring_group(members)
        if m.recurring_group_id == booking.recurring_group_id and not m.is_archived
    ]
    if sc is RecurringScope.ALL:
        return [m.id for m in active]
    start = booking.recurring_sequence or 0
    return [m.id for m in active if (m.recurring_sequence or 0) >= start]


# ---------------------------------------------------------------------------
# Schedule helpers
# ---------------------------------------------------------------------------


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_auto_schedule_dates(
    start: date,
    count: int,
    pattern: str | RecurringPattern = RecurringPattern.AUTO_MONTHLY,
) -> list[date]:
    """Monthly dates from ``start``; day-of-month is clamped to the month's end."""
    pat = getattr(pattern, "value", pattern)
    if pat == RecurringPattern.CUSTOM.value:
        raise ValueError("Custom pattern does not support auto-generation")
    if pat != RecurringPattern.AUTO_MONTHLY.value:
        raise ValueError(f"Unsupported pattern: {pattern}")
    return [_add_months(start, i) for i in range(max(0, count))]


def validate_recurring_dates(
    dates: Sequence[str | date],
    frequency: int,
    today: date | None = None,
) -> tuple[bool, list[str]]:
    errors: list[str] = []
    if len(dates) != frequency:
        errors.append(f"Expected {frequency} dates, got {len(dates)}")

    parsed: list[date] = []
    for d in dates:
        if isinstance(d, date):
            parsed.append(d)
            continue
        try:
            parsed.append(date.fromisoformat(str(d)))
        except ValueError:
            errors.append(f"Invalid date: {d}")

    if parsed != sorted(parsed):
        errors.append("Dates must be in chronological order")
    if len(set(parsed)) != len(parsed):
        errors.append("Duplicate dates found")

    ref = today or date.today()
    for d in parsed:
        if d < ref:
            errors.append(f"Date in the past: {d.isoformat()}")
    return (not errors, errors)


def is_pattern_compatible_with_frequency(pattern: str | RecurringPattern, frequency: int) -> bool:
    pat = getattr(pattern, "value", pattern)
    if pat not in _PATTERN_LABELS:
        return False
    return frequency in ALLOWED_FREQUENCIES


def get_recurring_pattern_label(pattern: str | RecurringPattern | None) -> str:
    if not pattern:
        return "Not specified"
    return _PATTERN_LABELS.get(str(getattr(pattern, "value", pattern)), "Not specified")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecurringCreation:
    success: bool
    group_id: str
    booking_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


class RecurringBookingService:
    """Scope-resolved archive/delete/update plus series creation and upkeep."""

    def __init__(self, store: BookingStore, notify: Notifier | None = None) -> None:
        self.store = store
        self.notify = notify

    async def resolve_recurring_scope(self, booking: BookingRecord, scope: str | RecurringScope) -> list[str]:
        sc = coerce_scope(scope)
        if sc is RecurringScope.THIS_ONLY:
            return [booking.id]
        if not booking.recurring_group_id:
            raise UngroupedBookingError(booking.id, sc.value)
        members = await self.store.list(by_group_id(booking.recurring_group_id), not_archived())
        return resolve_scope_ids(booking, sc, members)

    async def _run_batch(
        self,
        verb: str,
        ids: Sequence[str],
        op: Callable[[str], Awaitable[bool]],
    ) -> BatchOutcome:
        succeeded = 0
        failed: list[str] = []
        for booking_id in ids:
            try:
                ok = await op(booking_id)
            except Exception as exc:
                logger.error("%s failed for booking %s: %s", verb, booking_id, exc)
                ok = False
            if ok:
                succeeded += 1
            else:
                failed.append(booking_id)
        outcome = BatchOutcome(requested=len(ids), succeeded=succeeded, failed_ids=tuple(failed))
        await self._report(verb, outcome)
        return outcome

    async def _report(self, verb: str, outcome: BatchOutcome) -> None:
        noun = "booking" if outcome.requested == 1 else "bookings"
        if outcome.is_complete:
            logger.info("%s %d %s", verb, outcome.succeeded, noun)
            await emit_notice(self.notify, "success", f"{verb} {outcome.succeeded} {noun}")
            return
        logger.warning(
            "%s %d of %d %s; failed ids: %s",
            verb, outcome.succeeded, outcome.requested, noun, list(outcome.failed_ids),
        )
        if outcome.succeeded == 0:
            await emit_notice(self.notify, "error", f"{verb} 0 of {outcome.requested} {noun}")
        elif cfg.get_setting("warn_on_partial_batch", True):
            await emit_notice(
                self.notify,
                "warning",
                f"{verb} {outcome.succeeded} of {outcome.requested} {noun}; {outcome.failed} failed",
            )

    async def archive_recurring(
        self,
        booking: BookingRecord,
        scope: str | RecurringScope,
        deleted_by: str | None = None,
    ) -> BatchOutcome:
        ids = await self.resolve_recurring_scope(booking, scope)

        async def _archive(booking_id: str) -> bool:
            return await self.store.soft_delete(booking_id, deleted_by)

        return await self._run_batch("Archived", ids, _archive)

    async def delete_recurring(self, booking: BookingRecord, scope: str | RecurringScope) -> BatchOutcome:
        ids = await self.resolve_recurring_scope(booking, scope)

        async def _delete(booking_id: str) -> bool:
            return bool(await self.store.delete(by_id(booking_id)))

        return await self._run_batch("Deleted", ids, _delete)

    async def update_recurring(
        self,
        booking: BookingRecord,
        scope: str | RecurringScope,
        updates: Mapping[str, Any],
    ) -> BatchOutcome:
        protected = sorted(_SERIES_FIELDS.intersection(updates))
        if protected:
            raise BookingError(
                f"Cannot update series fields: {', '.join(protected)}",
                code="protected_field",
                details={"fields": protected},
            )
        ids = await self.resolve_recurring_scope(booking, scope)
        values = dict(updates)

        async def _update(booking_id: str) -> bool:
            return bool(await self.store.update(values, by_id(booking_id)))

        return await self._run_batch("Updated", ids, _update)

    async def restore_recurring_group(self, group_id: str) -> BatchOutcome:
        archived = await self.store.list(by_group_id(group_id), archived_only())
        return await self._run_batch("Restored", [b.id for b in archived], self.store.restore)

    async def archive_recurring_group(self, group_id: str, deleted_by: str | None = None) -> BatchOutcome:
        active = await self.store.list(by_group_id(group_id), not_archived())

        async def _archive(booking_id: str) -> bool:
            return await self.store.soft_delete(booking_id, deleted_by)

        return await self._run_batch("Archived", [b.id for b in active], _archive)

    async def purge_recurring_group(self, group_id: str) -> int:
        """Hard-delete every member of the group in a single persistence call."""
        try:
            ids = await self.store.delete(by_group_id(group_id))
        except Exception as exc:
            await handle_persistence_error(exc, "recurring group", self.notify)
            raise
        logger.info("Purged recurring group %s (%d bookings)", group_id, len(ids))
        await emit_notice(self.notify, "success", f"Deleted {len(ids)} bookings")
        return len(ids)

    async def get_recurring_group(self, group_id: str) -> RecurringGroup | None:
        members = await self.store.list(by_group_id(group_id))
        if not members:
            logger.debug("Recurring group %s not found", group_id)
            return None
        return build_recurring_group(group_id, members)

    async def create_recurring_group(
        self,
        base: Mapping[str, Any],
        pattern: str | RecurringPattern,
        dates: Sequence[date | str],
    ) -> RecurringCreation:
        """Insert a series: the parent at sequence 1, children pointing at it.

        On any persistence failure the rows created so far are deleted and
        the result carries the error.
        """
        pat = RecurringPattern(getattr(pattern, "value", pattern))
        if not dates:
            raise BookingError("A recurring group needs at least one date", code="empty_schedule")
        group_id = str(uuid.uuid4())
        created: list[str] = []
        template = {k: v for k, v in base.items() if k not in _SERIES_FIELDS}
        template.update(
            is_recurring=True,
            recurring_group_id=group_id,
            recurring_total=len(dates),
            recurring_pattern=pat.value,
        )
        try:
            parent_ids = await self.store.insert(
                [{**template, "booking_date": dates[0], "recurring_sequence": 1, "parent_booking_id": None}]
            )
            if not parent_ids:
                raise PersistenceError("Failed to create parent booking")
            parent_id = parent_ids[0]
            created.append(parent_id)
            if len(dates) > 1:
                children = [
                    {**template, "booking_date": d, "recurring_sequence": idx + 2, "parent_booking_id": parent_id}
                    for idx, d in enumerate(dates[1:])
                ]
                created.extend(await self.store.insert(children))
        except Exception as exc:
            logger.error("Creating recurring group %s failed: %s", group_id, exc)
            if created:
                try:
                    await self.store.delete(by_id_in(created))
                    logger.info("Rolled back %d booking(s) of group %s", len(created), group_id)
                except Exception as rollback_exc:
                    logger.error("Rollback of group %s failed: %s", group_id, rollback_exc)
            await handle_persistence_error(exc, "recurring booking", self.notify)
            return RecurringCreation(success=False, group_id=group_id, errors=(error_text(exc),))
        logger.info("Created recurring group %s with %d bookings", group_id, len(created))
        return RecurringCreation(success=True, group_id=group_id, booking_ids=tuple(created))

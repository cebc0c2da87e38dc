from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Iterable, Sequence

import crm.config as cfg
from crm.app.domain.records import BookingRecord, RecurringGroup
from crm.app.services.recurring_services import group_bookings

logger = logging.getLogger(__name__)

__all__ = [
    "ALL",
    "UNASSIGNED",
    "BookingFilters",
    "CombinedItem",
    "PageMeta",
    "matches_filters",
    "apply_filters",
    "build_combined_items",
    "paginate_combined",
    "total_bookings_count",
]

ALL = "all"
UNASSIGNED = "unassigned"

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class BookingFilters:
    """Admin list filters; ``None`` or ``"all"`` disables a criterion."""

    search: str | None = None
    status: str | None = None
    staff_id: str | None = None
    team_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    service_type: str | None = None
    payment_status: str | None = None
    show_archived: bool = False


def _active(value: str | None) -> bool:
    return bool(value) and value != ALL


def matches_filters(booking: BookingRecord, filters: BookingFilters | None) -> bool:
    if filters is None:
        return not booking.is_archived
    if booking.is_archived and not filters.show_archived:
        return False
    if filters.search:
        query = filters.search.strip().lower()
        haystack = (booking.customer_name or "", booking.service_name or "", booking.id)
        if query and not any(query in part.lower() for part in haystack):
            return False
    if _active(filters.status) and booking.status != filters.status:
        return False
    if _active(filters.staff_id):
        if filters.staff_id == UNASSIGNED:
            if booking.staff_id:
                return False
        elif booking.staff_id != filters.staff_id:
            return False
    if _active(filters.team_id) and booking.team_id != filters.team_id:
        return False
    if filters.date_from and (booking.booking_date is None or booking.booking_date < filters.date_from):
        return False
    if filters.date_to and (booking.booking_date is None or booking.booking_date > filters.date_to):
        return False
    if _active(filters.service_type) and booking.service_type != filters.service_type:
        return False
    if _active(filters.payment_status) and booking.payment_status != filters.payment_status:
        return False
    return True


def apply_filters(bookings: Iterable[BookingRecord], filters: BookingFilters | None) -> list[BookingRecord]:
    return [b for b in bookings if matches_filters(b, filters)]


@dataclass(frozen=True)
class CombinedItem:
    """One row of the admin list: a whole recurring group or a single booking."""

    kind: str
    sort_key: datetime
    group: RecurringGroup | None = None
    booking: BookingRecord | None = None

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @property
    def booking_count(self) -> int:
        if self.group is not None:
            return self.group.total_bookings
        return 1


@dataclass(frozen=True)
class PageMeta:
    page: int
    page_size: int
    total_pages: int
    total_items: int
    start_index: int
    end_index: int
    has_next: bool
    has_prev: bool


def build_combined_items(
    bookings: Iterable[BookingRecord],
    filters: BookingFilters | None = None,
) -> list[CombinedItem]:
    """Groups and standalone bookings in one list, newest first.

    A group sorts by its first member's ``created_at``.  Groups left empty by
    the filters are not shown.
    """
    grouped = group_bookings(bookings, include=lambda b: matches_filters(b, filters))
    items: list[CombinedItem] = []
    for group in grouped.groups:
        if not group.bookings:
            continue
        items.append(CombinedItem(kind="group", sort_key=group.bookings[0].created_at or _EPOCH, group=group))
    for booking in grouped.standalone:
        items.append(CombinedItem(kind="booking", sort_key=booking.created_at or _EPOCH, booking=booking))
    items.sort(key=lambda item: item.sort_key, reverse=True)
    return items


def total_bookings_count(items: Iterable[CombinedItem]) -> int:
    return sum(item.booking_count for item in items)


def paginate_combined(
    items: Sequence[CombinedItem],
    page: int = 1,
    page_size: int | None = None,
) -> tuple[list[CombinedItem], PageMeta]:
    """Slice ``items`` into a page; indices and totals are counted in bookings."""
    size = max(1, page_size or cfg.get_page_size())
    total_pages = max(1, math.ceil(len(items) / size))
    p = max(1, min(page, total_pages))
    offset = (p - 1) * size
    page_items = list(items[offset:offset + size])

    before = total_bookings_count(items[:offset])
    on_page = total_bookings_count(page_items)
    meta = PageMeta(
        page=p,
        page_size=size,
        total_pages=total_pages,
        total_items=total_bookings_count(items),
        start_index=before + 1 if on_page else 0,
        end_index=before + on_page,
        has_next=p < total_pages,
        has_prev=p > 1,
    )
    return page_items, meta

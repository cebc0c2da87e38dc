"""In-process query cache shared by the mutation services and realtime sync.

Keys are tuples of scalars; every key holding booking lists starts with
``"bookings"`` (``("bookings", "all")``, ``("bookings", "team", team_id)``).
Values are lists of frozen
``BookingRecord`` objects, so a snapshot only needs to copy the mapping and
each list.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Hashable, Iterable

from crm.app.domain.records import BookingRecord

logger = logging.getLogger(__name__)

__all__ = ["BOOKINGS_KEY", "CacheKey", "CacheSnapshot", "QueryCache", "BookingSelection"]

CacheKey = tuple[Hashable, ...]
CacheSnapshot = dict[CacheKey, Any]

BOOKINGS_KEY: CacheKey = ("bookings",)


def _has_prefix(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


def _copy(value: Any) -> Any:
    if isinstance(value, list):
        return list(value)
    return value


class QueryCache:
    def __init__(self) -> None:
        self._data: dict[CacheKey, Any] = {}
        self._stale: set[CacheKey] = set()

    def read(self, key: CacheKey) -> Any:
        return self._data.get(key)

    def write(self, key: CacheKey, value: Any) -> None:
        self._data[key] = value
        self._stale.discard(key)

    def keys(self, prefix: CacheKey = BOOKINGS_KEY) -> list[CacheKey]:
        return [k for k in self._data if _has_prefix(k, prefix)]

    def snapshot(self, prefix: CacheKey = BOOKINGS_KEY) -> CacheSnapshot:
        """Copy every entry under ``prefix`` for a later ``restore``."""
        return {k: _copy(v) for k, v in self._data.items() if _has_prefix(k, prefix)}

    def restore(self, snapshot: CacheSnapshot) -> None:
        for key, value in snapshot.items():
            if value is not None:
                self._data[key] = _copy(value)
        logger.debug("Cache restored for %d key(s)", len(snapshot))

    def update_bookings(
        self,
        transform: Callable[[BookingRecord], BookingRecord],
        prefix: CacheKey = BOOKINGS_KEY,
    ) -> int:
        """Apply ``transform`` to every cached booking; returns records changed."""
        changed = 0
        for key in self.keys(prefix):
            value = self._data[key]
            if not isinstance(value, list):
                continue
            new_list: list[Any] = []
            for item in value:
                if isinstance(item, BookingRecord):
                    updated = transform(item)
                    if updated is not item:
                        changed += 1
                    new_list.append(updated)
                else:
                    new_list.append(item)
            self._data[key] = new_list
        return changed

    def replace_booking(self, record: BookingRecord) -> int:
        return self.update_bookings(lambda b: record if b.id == record.id else b)

    def find_booking(self, booking_id: str) -> BookingRecord | None:
        for key in self.keys():
            value = self._data[key]
            if not isinstance(value, list):
                continue
            for item in value:
                if isinstance(item, BookingRecord) and item.id == booking_id:
                    return item
        return None

    def invalidate(self, prefix: CacheKey = BOOKINGS_KEY) -> list[CacheKey]:
        """Mark entries under ``prefix`` stale; data stays readable until refetched."""
        keys = self.keys(prefix)
        self._stale.update(keys)
        return keys

    def is_stale(self, key: CacheKey) -> bool:
        return key in self._stale

    def stale_keys(self) -> Iterable[CacheKey]:
        return sorted(self._stale, key=repr)


class BookingSelection:
    """The booking currently open in a detail view.

    Shared between the lifecycle/payment services (optimistic updates) and the
    realtime sync, which keeps ``last_synced`` as the baseline for change
    detection.
    """

    def __init__(self, selected: BookingRecord | None = None) -> None:
        self.selected = selected
        self.last_synced = selected

    def select(self, record: BookingRecord | None) -> None:
        self.selected = record
        self.last_synced = record

    def clear(self) -> None:
        self.select(None)

    def is_selected(self, booking_id: str) -> bool:
        return self.selected is not None and self.selected.id == booking_id

    def set(self, record: BookingRecord) -> None:
        """Replace the selected record without moving the sync baseline."""
        self.selected = record

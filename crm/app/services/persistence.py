"""Persistence collaborator contract.

Services never talk to the database directly; they receive a ``BookingStore``
and describe row selections with the typed filters below.  ``BookingRepo``
translates the filters into SQLAlchemy expressions; each filter can also be
evaluated against an in-memory record via ``matches``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol, Sequence

from crm.app.domain.records import BookingRecord

__all__ = [
    "BookingFilter",
    "ById",
    "ByIdIn",
    "ByGroupId",
    "WithStatusIn",
    "WithSequenceAtLeast",
    "NotArchived",
    "ArchivedOnly",
    "by_id",
    "by_id_in",
    "by_group_id",
    "with_status_in",
    "with_sequence_at_least",
    "not_archived",
    "archived_only",
    "matches_all",
    "BookingStore",
]


class BookingFilter:
    def matches(self, record: BookingRecord) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True)
class ById(BookingFilter):
    booking_id: str

    def matches(self, record: BookingRecord) -> bool:
        return record.id == self.booking_id


@dataclass(frozen=True)
class ByIdIn(BookingFilter):
    booking_ids: tuple[str, ...]

    def matches(self, record: BookingRecord) -> bool:
        return record.id in self.booking_ids


@dataclass(frozen=True)
class ByGroupId(BookingFilter):
    group_id: str

    def matches(self, record: BookingRecord) -> bool:
        return record.recurring_group_id == self.group_id


@dataclass(frozen=True)
class WithStatusIn(BookingFilter):
    statuses: tuple[str, ...]

    def matches(self, record: BookingRecord) -> bool:
        return record.status in self.statuses


@dataclass(frozen=True)
class WithSequenceAtLeast(BookingFilter):
    sequence: int

    def matches(self, record: BookingRecord) -> bool:
        return record.recurring_sequence is not None and record.recurring_sequence >= self.sequence


@dataclass(frozen=True)
class NotArchived(BookingFilter):
    def matches(self, record: BookingRecord) -> bool:
        return record.deleted_at is None


@dataclass(frozen=True)
class ArchivedOnly(BookingFilter):
    def matches(self, record: BookingRecord) -> bool:
        return record.deleted_at is not None


def by_id(booking_id: str) -> ById:
    return ById(str(booking_id))


def by_id_in(booking_ids: Iterable[str]) -> ByIdIn:
    return ByIdIn(tuple(str(i) for i in booking_ids))


def by_group_id(group_id: str) -> ByGroupId:
    return ByGroupId(str(group_id))


def with_status_in(statuses: Iterable[Any]) -> WithStatusIn:
    return WithStatusIn(tuple(str(getattr(s, "value", s)) for s in statuses))


def with_sequence_at_least(sequence: int) -> WithSequenceAtLeast:
    return WithSequenceAtLeast(int(sequence))


def not_archived() -> NotArchived:
    return NotArchived()


def archived_only() -> ArchivedOnly:
    return ArchivedOnly()


def matches_all(record: BookingRecord, filters: Sequence[BookingFilter]) -> bool:
    return all(f.matches(record) for f in filters)


class BookingStore(Protocol):
    """Async persistence collaborator; failures raise ``PersistenceError``."""

    async def get(self, booking_id: str) -> BookingRecord | None: ...

    async def list(self, *filters: BookingFilter) -> list[BookingRecord]: ...

    async def update(self, values: Mapping[str, Any], *filters: BookingFilter) -> list[str]: ...

    async def delete(self, *filters: BookingFilter) -> list[str]: ...

    async def insert(self, rows: Sequence[Mapping[str, Any]]) -> list[str]: ...

    async def soft_delete(self, booking_id: str, deleted_by: str | None) -> bool: ...

    async def restore(self, booking_id: str) -> bool: ...

"""Test configuration and shared fakes.

Adds the repository root to sys.path so `import crm` works when the checkout
directory is not on PYTHONPATH, and provides an in-memory ``BookingStore``
with failure injection for the service tests.
"""

from __future__ import annotations

import sys
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from crm.app.core.errors import PersistenceError  # noqa: E402
from crm.app.domain.records import BookingRecord, booking_from_mapping, merge_values  # noqa: E402
from crm.app.services.persistence import BookingFilter, matches_all  # noqa: E402

BASE_TIME = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def make_booking(booking_id: str, **fields: Any) -> BookingRecord:
    data: dict[str, Any] = {"id": booking_id, "created_at": BASE_TIME}
    data.update(fields)
    return booking_from_mapping(data)


def make_group(group_id: str, size: int, prefix: str | None = None, **fields: Any) -> list[BookingRecord]:
    prefix = prefix or group_id
    return [
        make_booking(
            f"{prefix}-{seq}",
            is_recurring=True,
            recurring_group_id=group_id,
            recurring_sequence=seq,
            recurring_total=size,
            recurring_pattern="auto-monthly",
            created_at=BASE_TIME + timedelta(days=seq),
            **fields,
        )
        for seq in range(1, size + 1)
    ]


class InMemoryBookingStore:
    """Dict-backed BookingStore.

    ``fail_ids`` makes any write touching one of those ids raise
    PersistenceError; ``fail_writes`` fails every write; ``fail_inserts_after``
    lets that many insert calls succeed before failing.  ``fail_exc`` is the
    exception type raised for write failures.
    """

    def __init__(self, bookings: Sequence[BookingRecord] = ()) -> None:
        self.rows: dict[str, BookingRecord] = {b.id: b for b in bookings}
        self.fail_ids: set[str] = set()
        self.fail_writes = False
        self.fail_reads = False
        self.fail_inserts_after: int | None = None
        self.fail_exc: type[Exception] = PersistenceError
        self.calls: list[tuple[str, Any]] = []
        self.before_write: Any = None

    def _check_write(self, ids: Sequence[str]) -> None:
        if self.before_write is not None:
            self.before_write()
        if self.fail_writes or self.fail_ids.intersection(ids):
            raise self.fail_exc("simulated write failure")

    async def get(self, booking_id: str) -> BookingRecord | None:
        self.calls.append(("get", booking_id))
        if self.fail_reads:
            raise PersistenceError("simulated read failure")
        return self.rows.get(booking_id)

    async def list(self, *filters: BookingFilter) -> list[BookingRecord]:
        self.calls.append(("list", filters))
        if self.fail_reads:
            raise PersistenceError("simulated read failure")
        return [b for b in self.rows.values() if matches_all(b, filters)]

    async def update(self, values: Mapping[str, Any], *filters: BookingFilter) -> list[str]:
        self.calls.append(("update", (dict(values), filters)))
        ids = [b.id for b in self.rows.values() if matches_all(b, filters)]
        self._check_write(ids)
        for i in ids:
            self.rows[i] = merge_values(self.rows[i], values)
        return ids

    async def delete(self, *filters: BookingFilter) -> list[str]:
        self.calls.append(("delete", filters))
        ids = [b.id for b in self.rows.values() if matches_all(b, filters)]
        self._check_write(ids)
        for i in ids:
            del self.rows[i]
        return ids

    async def insert(self, rows: Sequence[Mapping[str, Any]]) -> list[str]:
        self.calls.append(("insert", [dict(r) for r in rows]))
        if self.fail_inserts_after is not None:
            if self.fail_inserts_after <= 0:
                raise PersistenceError("simulated insert failure")
            self.fail_inserts_after -= 1
        ids = []
        for row in rows:
            data = dict(row)
            data.setdefault("id", str(uuid.uuid4()))
            data.setdefault("created_at", BASE_TIME)
            record = booking_from_mapping(data)
            self.rows[record.id] = record
            ids.append(record.id)
        return ids

    async def soft_delete(self, booking_id: str, deleted_by: str | None) -> bool:
        self.calls.append(("soft_delete", booking_id))
        self._check_write([booking_id])
        row = self.rows.get(booking_id)
        if row is None or row.is_archived:
            return False
        self.rows[booking_id] = replace(row, deleted_at=BASE_TIME, deleted_by=deleted_by)
        return True

    async def restore(self, booking_id: str) -> bool:
        self.calls.append(("restore", booking_id))
        self._check_write([booking_id])
        row = self.rows.get(booking_id)
        if row is None or not row.is_archived:
            return False
        self.rows[booking_id] = replace(row, deleted_at=None, deleted_by=None)
        return True

    def calls_named(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]


class NoticeRecorder:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def __call__(self, level: str, message: str) -> None:
        self.messages.append((level, message))

    def levels(self) -> list[str]:
        return [level for level, _ in self.messages]


@pytest.fixture
def notices() -> NoticeRecorder:
    return NoticeRecorder()


@pytest.fixture
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()



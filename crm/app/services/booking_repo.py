from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, time
from typing import Any, Mapping, Sequence

from sqlalchemy import ColumnElement, delete, select, true, update

from crm.app.core.db import DB_ERRORS, get_session
from crm.app.core.errors import PersistenceError
from crm.app.domain.models import Booking
from crm.app.domain.records import BookingRecord, normalize_booking_row, to_datetime
from crm.app.services.persistence import (
    ArchivedOnly,
    BookingFilter,
    ByGroupId,
    ById,
    ByIdIn,
    NotArchived,
    WithSequenceAtLeast,
    WithStatusIn,
)

logger = logging.getLogger(__name__)

__all__ = ["BookingRepo", "filter_clause"]

_COLUMNS = frozenset(Booking.__table__.c.keys())
_DATE_COLUMNS = frozenset({"payment_date", "booking_date"})
_TIME_COLUMNS = frozenset({"start_time", "end_time"})
_DATETIME_COLUMNS = frozenset({"created_at", "updated_at", "deleted_at"})


def utc_now() -> datetime:
    return datetime.now(UTC)


def filter_clause(f: BookingFilter) -> ColumnElement[bool]:
    """Translate a typed filter into a SQLAlchemy boolean expression."""
    if isinstance(f, ById):
        return Booking.id == f.booking_id
    if isinstance(f, ByIdIn):
        return Booking.id.in_(list(f.booking_ids))
    if isinstance(f, ByGroupId):
        return Booking.recurring_group_id == f.group_id
    if isinstance(f, WithStatusIn):
        return Booking.status.in_(list(f.statuses))
    if isinstance(f, WithSequenceAtLeast):
        return Booking.recurring_sequence >= f.sequence
    if isinstance(f, NotArchived):
        return Booking.deleted_at.is_(None)
    if isinstance(f, ArchivedOnly):
        return Booking.deleted_at.is_not(None)
    raise TypeError(f"Unsupported booking filter: {f!r}")


def _where(filters: Sequence[BookingFilter]) -> list[ColumnElement[bool]]:
    clauses = [filter_clause(f) for f in filters]
    return clauses or [true()]


def _coerce_values(values: Mapping[str, Any]) -> dict[str, Any]:
    """Convert wire-friendly values (ISO strings, enums) to column types."""
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key not in _COLUMNS:
            raise PersistenceError(f"Unknown booking column: {key}", details={"column": key})
        value = getattr(value, "value", value)
        if isinstance(value, str) and value:
            if key in _DATE_COLUMNS:
                value = date.fromisoformat(value[:10])
            elif key in _TIME_COLUMNS:
                value = time.fromisoformat(value)
            elif key in _DATETIME_COLUMNS:
                value = to_datetime(value)
        out[key] = value
    return out


class BookingRepo:
    """SQLAlchemy-backed ``BookingStore``. All methods open their own session
    and convert driver errors into ``PersistenceError``.
    """

    @staticmethod
    async def get(booking_id: str) -> BookingRecord | None:
        try:
            async with get_session() as session:
                row = await session.get(Booking, str(booking_id))
                return normalize_booking_row(row) if row is not None else None
        except DB_ERRORS as exc:
            logger.error("BookingRepo.get failed for %s: %s", booking_id, exc)
            raise PersistenceError(str(exc)) from exc

    @staticmethod
    async def list(*filters: BookingFilter) -> list[BookingRecord]:
        stmt = (
            select(Booking)
            .where(*_where(filters))
            .order_by(Booking.recurring_group_id, Booking.recurring_sequence, Booking.created_at)
        )
        try:
            async with get_session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except DB_ERRORS as exc:
            logger.error("BookingRepo.list failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        return [normalize_booking_row(r) for r in rows]

    @staticmethod
    async def update(values: Mapping[str, Any], *filters: BookingFilter) -> list[str]:
        if not filters:
            # Refuse table-wide updates
            raise PersistenceError("update requires at least one filter")
        payload = _coerce_values(values)
        payload.setdefault("updated_at", utc_now())
        stmt = update(Booking).where(*_where(filters)).values(**payload).returning(Booking.id)
        try:
            async with get_session() as session:
                ids = list((await session.execute(stmt)).scalars().all())
                await session.commit()
        except DB_ERRORS as exc:
            logger.error("BookingRepo.update failed (%s): %s", sorted(payload), exc)
            raise PersistenceError(str(exc)) from exc
        logger.debug("Updated %d booking(s): %s", len(ids), sorted(payload))
        return [str(i) for i in ids]

    @staticmethod
    async def delete(*filters: BookingFilter) -> list[str]:
        if not filters:
            raise PersistenceError("delete requires at least one filter")
        stmt = delete(Booking).where(*_where(filters)).returning(Booking.id)
        try:
            async with get_session() as session:
                ids = list((await session.execute(stmt)).scalars().all())
                await session.commit()
        except DB_ERRORS as exc:
            logger.error("BookingRepo.delete failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        logger.info("Hard-deleted %d booking(s)", len(ids))
        return [str(i) for i in ids]

    @staticmethod
    async def insert(rows: Sequence[Mapping[str, Any]]) -> list[str]:
        objs: list[Booking] = []
        for row in rows:
            payload = _coerce_values(row)
            payload.setdefault("id", str(uuid.uuid4()))
            objs.append(Booking(**payload))
        try:
            async with get_session() as session:
                session.add_all(objs)
                await session.commit()
        except DB_ERRORS as exc:
            logger.error("BookingRepo.insert failed for %d row(s): %s", len(objs), exc)
            raise PersistenceError(str(exc)) from exc
        return [str(o.id) for o in objs]

    @staticmethod
    async def soft_delete(booking_id: str, deleted_by: str | None) -> bool:
        ids = await BookingRepo.update(
            {"deleted_at": utc_now(), "deleted_by": deleted_by},
            ById(str(booking_id)),
            NotArchived(),
        )
        return bool(ids)

    @staticmethod
    async def restore(booking_id: str) -> bool:
        ids = await BookingRepo.update(
            {"deleted_at": None, "deleted_by": None},
            ById(str(booking_id)),
            ArchivedOnly(),
        )
        return bool(ids)

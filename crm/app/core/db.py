"""Async SQLAlchemy engine and session helpers.

The engine is created lazily from ``DATABASE_URL`` on first use.  The first
session opened in a process checks that the ``bookings`` table exists and
creates the schema from the ORM metadata when it does not (handy for local
runs; deployments use the alembic migrations).
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..domain.models import Base
from .constants import SQL_ECHO

logger = logging.getLogger(__name__)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "_reset_engine_for_tests",
    "DB_ERRORS",
]

DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_URL = "postgresql+asyncpg://crm_user:crm_pass@db:5432/crm_db"

# Driver and network failures surface as OSError / TimeoutError, not SQLAlchemyError
DB_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError, asyncio.TimeoutError)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=SQL_ECHO, pool_pre_ping=True)


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.debug("Async engine created")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


async def _ensure_schema() -> None:
    global _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1 FROM bookings LIMIT 1"))
        except SQLAlchemyError as exc:
            logger.warning("bookings table not reachable (%s); creating schema", exc)
            await init_db(force=False)
            return
        _mark_schema_ready()


def _mark_schema_ready() -> None:
    global _schema_ready
    _schema_ready = True


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Open a session; uncommitted work is rolled back when the block raises."""
    await _ensure_schema()
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(force: bool = False, on_create: Callable[[AsyncEngine], None] | None = None) -> None:
    """Create every table in the ORM metadata (dropping them first when ``force``)."""
    engine = get_engine()
    async with engine.begin() as conn:
        if force:
            logger.warning("Dropping all tables before create")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    if on_create is not None:
        on_create(engine)
    _mark_schema_ready()
    logger.info("Database schema ready: %s", ", ".join(sorted(Base.metadata.tables)))


def _reset_engine_for_tests() -> None:
    global _engine, _session_factory, _schema_ready, _schema_lock
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None

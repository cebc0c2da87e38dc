"""Realtime change feed.

``RealtimeFeed`` fans ``ChangeEvent`` objects out to subscriptions filtered by
table and an optional row predicate.  Events are queued and dispatched by
``RealtimeFeed.run`` so producers (the PostgreSQL LISTEN callback) never block.

``PgNotifyBridge`` owns a dedicated asyncpg connection that LISTENs on the
channel fed by the ``bookings`` NOTIFY trigger and turns each JSON payload
into a feed event.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import asyncpg

from crm.app.core.constants import REALTIME_QUEUE_SIZE

logger = logging.getLogger(__name__)

__all__ = [
    "ChangeEvent",
    "Subscription",
    "RealtimeFeed",
    "PgNotifyBridge",
    "parse_notify_payload",
]

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")

ChangeHandler = Callable[["ChangeEvent"], Union[None, Awaitable[None]]]
RowPredicate = Callable[["ChangeEvent"], bool]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (old copy for deletes)."""
        return self.new or self.old


@dataclass
class Subscription:
    table: str
    handler: ChangeHandler
    predicate: Optional[RowPredicate] = None
    active: bool = True

    def wants(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        return self.predicate is None or bool(self.predicate(event))


class RealtimeFeed:
    def __init__(self, maxsize: int = REALTIME_QUEUE_SIZE) -> None:
        self._subs: list[Subscription] = []
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

    def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        predicate: Optional[RowPredicate] = None,
    ) -> Subscription:
        sub = Subscription(table=table, handler=handler, predicate=predicate)
        self._subs.append(sub)
        logger.debug("Realtime subscription added for table %s", table)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.active = False
        if sub in self._subs:
            self._subs.remove(sub)

    def put_nowait(self, event: ChangeEvent) -> bool:
        """Queue an event from a sync callback; drops (and logs) when full."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning("Realtime queue full, dropping %s on %s", event.event_type, event.table)
            return False

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription; returns handlers called."""
        delivered = 0
        for sub in list(self._subs):
            if not sub.wants(event):
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                # One failing subscriber must not starve the others
                logger.exception("Realtime handler failed for %s on %s", event.event_type, event.table)
        return delivered

    async def run(self, stop_event: asyncio.Event) -> None:
        """Dispatch queued events until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self.publish(event)
            self._queue.task_done()

    async def drain(self) -> int:
        """Publish everything currently queued (used by tests and shutdown)."""
        count = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self.publish(event)
            self._queue.task_done()
            count += 1
        return count


def parse_notify_payload(payload: str) -> ChangeEvent | None:
    """Build a ChangeEvent from the trigger's JSON payload."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-JSON realtime payload: %.200s", payload)
        return None
    if not isinstance(data, dict):
        return None
    event_type = str(data.get("type") or data.get("event_type") or "").upper()
    if event_type not in EVENT_TYPES:
        logger.warning("Ignoring realtime payload with event type %r", event_type)
        return None
    return ChangeEvent(
        table=str(data.get("table") or ""),
        event_type=event_type,
        new=dict(data.get("new") or {}),
        old=dict(data.get("old") or {}),
    )


def _asyncpg_dsn(url: str) -> str:
    # SQLAlchemy URLs carry a driver suffix asyncpg does not understand
    return re.sub(r"^postgresql\+[^:]+://", "postgresql://", url)


class PgNotifyBridge:
    """Forward PostgreSQL NOTIFY payloads on ``channel`` into a RealtimeFeed."""

    def __init__(self, feed: RealtimeFeed, database_url: str, channel: str) -> None:
        self.feed = feed
        self.database_url = database_url
        self.channel = channel
        self.connection: asyncpg.Connection | None = None

    async def start(self) -> None:
        try:
            self.connection = await asyncpg.connect(_asyncpg_dsn(self.database_url))
            await self.connection.add_listener(self.channel, self._handle_notification)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.error("Failed to LISTEN on %s: %s", self.channel, exc)
            raise
        logger.info("Listening for booking changes on channel %s", self.channel)

    async def stop(self) -> None:
        conn = self.connection
        self.connection = None
        if conn is None:
            return
        try:
            await conn.remove_listener(self.channel, self._handle_notification)
        finally:
            await conn.close()
        logger.info("Stopped listening on channel %s", self.channel)

    def _handle_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        event = parse_notify_payload(payload)
        if event is None:
            return
        logger.debug("NOTIFY %s %s from pid %s", event.event_type, event.table, pid)
        self.feed.put_nowait(event)

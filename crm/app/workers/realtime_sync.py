"""Background worker applying realtime booking changes to the query cache.

UPDATE events replace the booking in every cached list.  INSERT and DELETE
events change list membership, so booking queries are invalidated and the
optional refresh callback refetches them.  The selected booking is only
resynchronised when one of the relevant fields differs from the copy last
synced, so unrelated edits do not disturb an open detail view.

start_realtime_sync_worker returns an async callable that stops the worker.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Iterable, Optional, Union

from crm.app.core.constants import RELEVANT_SYNC_FIELDS
from crm.app.domain.records import BookingRecord, booking_from_mapping
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.realtime import ChangeEvent, PgNotifyBridge, RealtimeFeed, Subscription

logger = logging.getLogger(__name__)

__all__ = [
    "RealtimeBookingSync",
    "has_relevant_changes",
    "start_realtime_sync_worker",
]

RefreshCallback = Callable[[], Union[None, Awaitable[None]]]


def has_relevant_changes(
    previous: BookingRecord | None,
    current: BookingRecord,
    fields: Iterable[str] = RELEVANT_SYNC_FIELDS,
) -> bool:
    if previous is None:
        return True
    return any(getattr(previous, f, None) != getattr(current, f, None) for f in fields)


class RealtimeBookingSync:
    def __init__(
        self,
        cache: QueryCache,
        selection: BookingSelection,
        refresh: Optional[RefreshCallback] = None,
        relevant_fields: Iterable[str] = RELEVANT_SYNC_FIELDS,
        table: str = "bookings",
    ) -> None:
        self.cache = cache
        self.selection = selection
        self.refresh = refresh
        self.relevant_fields = tuple(relevant_fields)
        self.table = table
        self._subscription: Subscription | None = None

    def attach(self, feed: RealtimeFeed) -> Subscription:
        self._subscription = feed.subscribe(self.table, self.handle)
        return self._subscription

    def detach(self, feed: RealtimeFeed) -> None:
        if self._subscription is not None:
            feed.unsubscribe(self._subscription)
            self._subscription = None

    async def handle(self, event: ChangeEvent) -> None:
        if event.event_type == "UPDATE":
            await self._on_update(event)
        elif event.event_type in ("INSERT", "DELETE"):
            await self._on_membership_change(event)

    async def _on_update(self, event: ChangeEvent) -> None:
        try:
            record = booking_from_mapping(event.new)
        except ValueError as exc:
            logger.warning("Skipping malformed realtime booking row: %s", exc)
            return
        self.cache.replace_booking(record)
        if not self.selection.is_selected(record.id):
            return
        if has_relevant_changes(self.selection.last_synced, record, self.relevant_fields):
            logger.debug("Resyncing selected booking %s", record.id)
            self.selection.select(record)

    async def _on_membership_change(self, event: ChangeEvent) -> None:
        keys = self.cache.invalidate()
        logger.debug("%s on %s invalidated %d cache key(s)", event.event_type, event.table, len(keys))
        if event.event_type == "DELETE":
            deleted_id = str(event.row.get("id") or "")
            if deleted_id and self.selection.is_selected(deleted_id):
                self.selection.clear()
        if self.refresh is not None:
            result = self.refresh()
            if inspect.isawaitable(result):
                await result


async def start_realtime_sync_worker(
    feed: RealtimeFeed,
    sync: RealtimeBookingSync,
    bridge: PgNotifyBridge | None = None,
) -> Callable[[], Awaitable[None]]:
    """Attach ``sync`` to ``feed``, start dispatching and return an async stop()."""
    stop_event: asyncio.Event = asyncio.Event()
    sync.attach(feed)
    if bridge is not None:
        await bridge.start()
    task = asyncio.create_task(feed.run(stop_event), name="realtime-sync")

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()
        if bridge is not None:
            await bridge.stop()
        sync.detach(feed)
        logger.info("Realtime sync worker stopped")

    logger.info("Realtime sync worker started (table=%s)", sync.table)
    return _stop

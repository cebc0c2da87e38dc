"""Runtime entrypoint: keeps the booking cache in sync with database changes."""
import argparse
import asyncio
import logging
import sys
from contextlib import suppress

import crm.config as cfg
from crm.app.core.db import init_db
from crm.app.core.logger import setup_logging
from crm.app.services.booking_repo import BookingRepo
from crm.app.services.cache_store import BookingSelection, QueryCache
from crm.app.services.persistence import not_archived
from crm.app.services.realtime import PgNotifyBridge, RealtimeFeed
from crm.app.services.recurring_services import RecurringBookingService
from crm.app.workers.realtime_sync import RealtimeBookingSync, start_realtime_sync_worker

logger = logging.getLogger("crm")

ALL_BOOKINGS_KEY = ("bookings", "all")


def log_notice(level: str, message: str) -> None:
    """Notifier that writes operator messages to the log."""
    if level == "error":
        logger.error(message)
    elif level == "warning":
        logger.warning(message)
    else:
        logger.info(message)


async def refresh_bookings(cache: QueryCache) -> None:
    cache.write(ALL_BOOKINGS_KEY, await BookingRepo.list(not_archived()))
    logger.debug("Booking cache refreshed")


async def main() -> None:
    cache = QueryCache()
    selection = BookingSelection()
    feed = RealtimeFeed()

    await refresh_bookings(cache)

    async def _refresh() -> None:
        await refresh_bookings(cache)

    sync = RealtimeBookingSync(cache, selection, refresh=_refresh)
    bridge = PgNotifyBridge(
        feed,
        database_url=str(cfg.get_setting("database_url")),
        channel=str(cfg.get_setting("realtime_channel")),
    )
    stop_sync = await start_realtime_sync_worker(feed, sync, bridge)

    logger.info("CRM worker running (%d bookings cached)", len(cache.read(ALL_BOOKINGS_KEY) or []))
    try:
        await asyncio.Event().wait()
    finally:
        try:
            await stop_sync()
        except Exception:
            logger.exception("main: stop_sync failed during shutdown")


async def purge_group(group_id: str) -> int:
    service = RecurringBookingService(BookingRepo(), notify=log_notice)
    return await service.purge_recurring_group(group_id)


if __name__ == "__main__":
    setup_logging()

    parser = argparse.ArgumentParser(prog="run_worker.py")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("init-db")
    pg = sub.add_parser("purge-group")
    pg.add_argument("--group-id", type=str, required=True)

    args = parser.parse_args()

    if args.cmd == "init-db":
        asyncio.run(init_db(force=False))
        sys.exit(0)

    if args.cmd == "purge-group":
        deleted = asyncio.run(purge_group(args.group_id))
        print(f"Deleted {deleted} bookings.")
        sys.exit(0)

    # Default behavior: run the sync worker
    with suppress(KeyboardInterrupt, SystemExit):
        asyncio.run(main())

from __future__ import annotations
import logging
import os
from typing import Any, Dict
from dotenv import load_dotenv
from zoneinfo import ZoneInfo

from crm.app.core.constants import (
    DEFAULT_BUSINESS_TIMEZONE,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PAYMENT_METHOD,
    REALTIME_CHANNEL,
)

LOCAL_TZ = ZoneInfo("Asia/Bangkok")

logger = logging.getLogger(__name__)

# Load environment from .env if present
load_dotenv()

# Runtime settings (may be overridden at runtime via update_setting)
SETTINGS: Dict[str, Any] = {
    "database_url": os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://crm_user:crm_pass@db:5432/crm_db"
    ),
    # IANA timezone name used for payment dates and "today" computations
    "timezone": os.getenv("TIMEZONE", DEFAULT_BUSINESS_TIMEZONE),
    "bookings_page_size": DEFAULT_PAGE_SIZE,
    "default_payment_method": DEFAULT_PAYMENT_METHOD,
    # Channel used by the NOTIFY trigger installed by the bookings migration
    "realtime_channel": REALTIME_CHANNEL,
    # Report partially successful batch operations as warnings
    "warn_on_partial_batch": os.getenv("WARN_ON_PARTIAL_BATCH", "True").lower() == "true",
}


def refresh_local_tz() -> None:
    """Refresh module-level LOCAL_TZ from SETTINGS['timezone'] with safe fallback."""
    global LOCAL_TZ
    tz_name = str(SETTINGS.get("timezone") or DEFAULT_BUSINESS_TIMEZONE)
    try:
        LOCAL_TZ = ZoneInfo(tz_name)
    except (KeyError, ValueError):
        logger.warning("Unknown timezone %r, keeping %s", tz_name, LOCAL_TZ)


# Initialize LOCAL_TZ from current SETTINGS/env
refresh_local_tz()


def get_setting(key: str, default: Any = None) -> Any:
    """Return a runtime setting by key.

    Args:
        key: Setting key.
        default: Value returned when the key is missing.

    Returns:
        The setting value or default.
    """
    value = SETTINGS.get(key, default)
    logger.debug("Setting read: key=%s, value=%s", key, value)
    return value


def update_setting(key: str, value: Any) -> None:
    """Update an in-memory setting; keeps LOCAL_TZ in sync with 'timezone'."""
    SETTINGS[key] = value
    logger.info("Setting updated: %s=%s", key, value)
    if key == "timezone":
        refresh_local_tz()


def get_page_size() -> int:
    """Page size for the combined bookings list."""
    try:
        return max(1, int(SETTINGS.get("bookings_page_size", DEFAULT_PAGE_SIZE)))
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE


def get_local_tz() -> ZoneInfo:
    return LOCAL_TZ


__all__ = [
    "SETTINGS",
    "LOCAL_TZ",
    "get_setting",
    "update_setting",
    "get_page_size",
    "get_local_tz",
    "refresh_local_tz",
]

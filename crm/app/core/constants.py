from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    vals: list[str] = []
    for token in raw.replace(";", ",").split(","):
        tok = token.strip()
        if tok:
            vals.append(tok)
    return tuple(vals) or default


def _normalize_payment_method(code: str | None) -> str | None:
    if not code:
        return None
    cleaned = str(code).strip().lower().replace("-", "_")
    if cleaned in {"cash", "transfer", "credit_card", "promptpay"}:
        return cleaned
    return None


# Pagination
DEFAULT_PAGE_SIZE: int = _env_int("PAGINATION_PAGE_SIZE", 10)

# Timezone defaults
DEFAULT_BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "Asia/Bangkok")

# Payments
DEFAULT_PAYMENT_METHOD: str = _normalize_payment_method(os.getenv("DEFAULT_PAYMENT_METHOD")) or "cash"

# Realtime
REALTIME_CHANNEL: str = os.getenv("REALTIME_CHANNEL", "booking_changes")
REALTIME_QUEUE_SIZE: int = _env_int("REALTIME_QUEUE_SIZE", 1000)
# Fields whose change forces the selected booking to be resynchronised
RELEVANT_SYNC_FIELDS: tuple[str, ...] = _env_list(
    "RELEVANT_SYNC_FIELDS",
    ("status", "payment_status", "payment_method", "payment_date", "payment_slip_url"),
)

# Membership periods without joined_at are treated as starting here
DEFAULT_MEMBERSHIP_START: str = os.getenv("DEFAULT_MEMBERSHIP_START", "2020-01-01T00:00:00+00:00")

# Feature flags / logging
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE: str = os.getenv("LOG_FILE", "crm.log")
SQL_ECHO: bool = _env_bool("SQL_ECHO", False)

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_BUSINESS_TIMEZONE",
    "DEFAULT_PAYMENT_METHOD",
    "REALTIME_CHANNEL",
    "REALTIME_QUEUE_SIZE",
    "RELEVANT_SYNC_FIELDS",
    "DEFAULT_MEMBERSHIP_START",
    "LOG_LEVEL_NAME",
    "LOG_FILE",
    "SQL_ECHO",
]

"""Logger facade.

Modules log through ``logging.getLogger(__name__)``; the process entry point
calls ``setup_logging`` once to install the console and file handlers.
"""

import logging

from rich.logging import RichHandler

from crm.app.core.constants import LOG_FILE, LOG_LEVEL_NAME

__all__ = ["get_logger", "setup_logging"]


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or __name__)


def setup_logging(level_name: str | None = None, log_file: str | None = LOG_FILE) -> logging.Logger:
    """Configure root logging: Rich console handler plus a WARNING+ file handler."""
    # Console: INFO / WARNING / ERROR (Rich)
    console_handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handlers: list[logging.Handler] = [console_handler]

    # File: WARNING+ only
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        handlers.append(file_handler)

    level = getattr(logging, (level_name or LOG_LEVEL_NAME).strip().upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    # Reduce noisy logs, but keep warnings
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("crm")

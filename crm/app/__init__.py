"""Application package.

Explicit initializer for ``crm.app``: exposes the database helpers and the
ORM models so callers can ``from crm.app import db, models``.
"""

from .core import db
from .domain import models

__all__ = ["db", "models"]

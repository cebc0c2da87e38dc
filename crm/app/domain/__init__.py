"""Domain package: ORM models, immutable booking records and the status table."""

from . import models  # noqa: F401

__all__ = ["models"]

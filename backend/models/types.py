"""Column types shared by the scheduling models."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, TypeDecorator

from backend.core.clock import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Stores instants as naive UTC and always returns aware UTC datetimes.

    SQLite drops offsets on the floor, so normalizing on the way in and out
    keeps comparisons between loaded rows and freshly computed slots valid on
    every backend.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value

"""Conversions between IANA wall-clock times and absolute UTC instants.

Availability rules are written in local minutes-of-day, while appointments are
stored as UTC instants. A UTC day boundary is not a local day boundary, and a
fixed offset is wrong on DST transition days, so every conversion goes through
the zone's actual offset at the instant in question.
"""

from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.core.clock import ensure_utc


class ZonedParts(NamedTuple):
    year: int
    month: int
    day: int
    hour: int
    minute: int
    day_of_week: int  # 0 = Sunday

    @property
    def minute_of_day(self) -> int:
        return self.hour * 60 + self.minute

    @property
    def local_date(self) -> date:
        return date(self.year, self.month, self.day)


class ZoneCache:
    """Resolved ``ZoneInfo`` objects keyed by IANA name."""

    def __init__(self) -> None:
        self._zones: dict[str, ZoneInfo] = {}
        self._lock = Lock()

    def get(self, name: str) -> ZoneInfo:
        zone = self._zones.get(name)
        if zone is not None:
            return zone

        with self._lock:
            zone = self._zones.get(name)
            if zone is None:
                zone = ZoneInfo(name)
                self._zones[name] = zone
            return zone

    def clear(self) -> None:
        with self._lock:
            self._zones.clear()

    def __len__(self) -> int:
        return len(self._zones)


def sunday_based_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


class TimeZoneMath:
    def __init__(self, cache: ZoneCache | None = None) -> None:
        self.cache = cache if cache is not None else ZoneCache()

    def is_valid_timezone(self, name: str) -> bool:
        if not name or not name.strip():
            return False
        try:
            self.cache.get(name)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            return False
        return True

    def offset_at(self, instant: datetime, zone_name: str) -> timedelta:
        """UTC offset in effect in ``zone_name`` at the absolute ``instant``."""
        zone = self.cache.get(zone_name)
        offset = ensure_utc(instant).astimezone(zone).utcoffset()
        return offset or timedelta(0)

    def zoned_to_utc(self, year: int, month: int, day: int, hour: int, minute: int, zone_name: str) -> datetime:
        """
        Resolve a local wall-clock time in ``zone_name`` to a UTC instant.

        The first guess treats the wall-clock fields as UTC, subtracts the
        offset found at that guess, then re-reads the offset at the result.
        If the two offsets differ the time sits on a DST transition and the
        second offset wins. Skipped and repeated wall times therefore resolve
        to whichever side of the transition the second read lands on, which
        depends on the sign of the zone's offset: in Los Angeles a skipped
        02:30 lands before the jump and a repeated 01:30 takes the daylight
        occurrence, while in Berlin a skipped 02:30 lands after the jump and a
        repeated 02:30 takes the standard-time occurrence.
        """
        utc_guess = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)

        first_offset = self.offset_at(utc_guess, zone_name)
        resolved = utc_guess - first_offset

        second_offset = self.offset_at(resolved, zone_name)
        if second_offset != first_offset:
            resolved = utc_guess - second_offset

        return resolved

    def local_minute_to_utc(self, local_day: date, minute_of_day: int, zone_name: str) -> datetime:
        """UTC instant for ``minute_of_day`` minutes after local midnight; 1440 rolls to the next day."""
        wall_clock = datetime(local_day.year, local_day.month, local_day.day) + timedelta(minutes=minute_of_day)
        return self.zoned_to_utc(
            wall_clock.year,
            wall_clock.month,
            wall_clock.day,
            wall_clock.hour,
            wall_clock.minute,
            zone_name,
        )

    def instant_to_zoned_parts(self, instant: datetime, zone_name: str) -> ZonedParts:
        local = ensure_utc(instant).astimezone(self.cache.get(zone_name))
        return ZonedParts(
            year=local.year,
            month=local.month,
            day=local.day,
            hour=local.hour,
            minute=local.minute,
            day_of_week=sunday_based_weekday(local.date()),
        )

    def zoned_calendar_day(self, instant: datetime, zone_name: str, offset_days: int = 0) -> date:
        return self.instant_to_zoned_parts(instant, zone_name).local_date + timedelta(days=offset_days)

"""Expansion of weekly availability rules into concrete checkout slots."""

from datetime import datetime, timedelta
from typing import Iterator, NamedTuple

from backend.core.clock import ensure_utc
from backend.services.timezone_math import TimeZoneMath, sunday_based_weekday


class GeneratedSlot(NamedTuple):
    start_time: datetime
    end_time: datetime


class RuleWindow(NamedTuple):
    day_of_week: int
    start_minute_of_day: int
    end_minute_of_day: int
    timezone: str


def rule_window(rule) -> RuleWindow:
    return RuleWindow(
        day_of_week=rule.day_of_week,
        start_minute_of_day=rule.start_minute_of_day,
        end_minute_of_day=rule.end_minute_of_day,
        timezone=rule.timezone,
    )


def iter_rule_slots(
    tz_math: TimeZoneMath,
    window: RuleWindow,
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
) -> Iterator[GeneratedSlot]:
    """
    Yield the rule's fixed-duration slots that intersect ``[window_start, window_end)``.

    Local calendar days are walked in the rule's zone from one day before the
    window's local start date to one day after its local end date, so a local
    window spilling across a UTC midnight is never missed. Each matching day's
    local window is converted to UTC and tiled contiguously from its start; a
    trailing remainder shorter than ``duration_minutes`` is dropped.
    """
    if duration_minutes <= 0:
        raise ValueError('duration_minutes must be positive')

    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    if window_end <= window_start:
        return

    duration = timedelta(minutes=duration_minutes)
    cursor = tz_math.zoned_calendar_day(window_start, window.timezone, -1)
    last_day = tz_math.zoned_calendar_day(window_end, window.timezone, 1)

    while cursor <= last_day:
        if sunday_based_weekday(cursor) == window.day_of_week:
            day_start = tz_math.local_minute_to_utc(cursor, window.start_minute_of_day, window.timezone)
            day_end = tz_math.local_minute_to_utc(cursor, window.end_minute_of_day, window.timezone)

            slot_start = day_start
            while day_end > day_start and slot_start + duration <= day_end:
                slot_end = slot_start + duration
                if slot_end > window_start and slot_start < window_end:
                    yield GeneratedSlot(slot_start, slot_end)
                slot_start = slot_end

        cursor += timedelta(days=1)


def generate_rule_slots(
    tz_math: TimeZoneMath,
    window: RuleWindow,
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
) -> list[GeneratedSlot]:
    return list(iter_rule_slots(tz_math, window, window_start, window_end, duration_minutes))

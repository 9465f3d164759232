"""
Timezone-aware instant helpers.

Everything here returns new aware datetimes; nothing mutates its input.
Naive datetimes are taken to be UTC.
"""
import math
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterator, Tuple
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 86400


def get_zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def to_epoch(instant: datetime) -> int:
    return int(ensure_aware(instant).timestamp())


def from_epoch(seconds: int) -> datetime:
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def local_date(instant: datetime, tz: tzinfo) -> date:
    return ensure_aware(instant).astimezone(tz).date()


def start_of_day(instant: datetime, tz: tzinfo) -> datetime:
    """Local midnight of the calendar day containing `instant`."""
    return datetime.combine(local_date(instant, tz), time.min, tzinfo=tz)


def add_days(instant: datetime, days: int, tz: tzinfo) -> datetime:
    """Shift by whole calendar days, keeping the local wall-clock time."""
    local = ensure_aware(instant).astimezone(tz)
    return datetime.combine(local.date() + timedelta(days=days), local.time(), tzinfo=tz)


def day_windows(start: datetime, end: datetime, tz: tzinfo) -> Iterator[Tuple[datetime, datetime]]:
    """
    Yields consecutive [window_start, window_end) pairs, one per local calendar
    day, from `start` up to `end`. The first window begins at `start` and the
    last one is clipped to `end`.
    """
    current = ensure_aware(start)
    end = ensure_aware(end)
    while current < end:
        next_day = add_days(start_of_day(current, tz), 1, tz)
        window_end = min(next_day, end)
        yield current, window_end
        current = window_end


def span_days(start: datetime, end: datetime) -> int:
    """Length of [start, end) in days, rounded up."""
    seconds = (ensure_aware(end) - ensure_aware(start)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)

"""
Datetime helpers and the injectable clock used by the local store.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Callable, overload

# A clock is any zero-argument callable returning an aware datetime.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@overload
def ensure_utc(value: datetime) -> datetime: ...


@overload
def ensure_utc(value: None) -> None: ...


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def one_month_before(value: datetime) -> datetime:
    """
    Return the same wall-clock moment one calendar month earlier.
    The day is clamped to the length of the previous month (Mar 31 -> Feb 28).
    """
    year, month = value.year, value.month - 1
    if month == 0:
        year, month = year - 1, 12
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def isoformat_z(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a trailing ``Z``."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")

"""Date helpers. Month boundaries are computed in UTC."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Iterator

import pendulum

TZ = "UTC"
# Anything above this is an epoch value in milliseconds.
EPOCH_MS_THRESHOLD = 10**12


def now_utc() -> pendulum.DateTime:
    return pendulum.now(TZ)


def today_utc() -> date:
    return _plain(now_utc().date())


def parse_source_date(value: Any) -> date | None:
    """Parse a date coming from an ad source.

    Accepts ISO strings, epoch seconds or milliseconds (as numbers or numeric
    strings) and date objects. Returns None for anything unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _plain(pendulum.instance(value).in_timezone(TZ).date())
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            value = int(stripped)
        else:
            try:
                parsed = pendulum.parse(stripped, tz=TZ)
            except (ValueError, TypeError):
                return None
            if isinstance(parsed, pendulum.DateTime):
                return _plain(parsed.in_timezone(TZ).date())
            if isinstance(parsed, date):
                return _plain(parsed)
            return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        seconds = value / 1000 if value > EPOCH_MS_THRESHOLD else value
        try:
            return _plain(pendulum.from_timestamp(seconds, tz=TZ).date())
        except (OverflowError, OSError, ValueError):
            return None
    return None


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def month_start(value: date) -> date:
    return date(value.year, value.month, 1)


def next_month(value: date) -> date:
    if value.month == 12:
        return date(value.year + 1, 1, 1)
    return date(value.year, value.month + 1, 1)


def month_end(value: date) -> date:
    """Last calendar day of the month containing ``value``."""
    return next_month(value) - timedelta(days=1)


def iter_months(start: date, end: date) -> Iterator[date]:
    """Yield the first day of every month from ``start`` through ``end``."""
    current = month_start(start)
    last = month_start(end)
    while current <= last:
        yield current
        current = next_month(current)


def subtract_months(value: date, months: int) -> date:
    return _plain(pendulum.date(value.year, value.month, value.day).subtract(months=months))


def active_days_in_month(start: date, end: date, month: date) -> int:
    """Days of the span ``(start, end]`` that fall inside ``month``.

    Summed over every month the span touches this equals ``(end - start).days``.
    """
    lower = max(start, month_start(month) - timedelta(days=1))
    upper = min(end, month_end(month))
    return max((upper - lower).days, 0)


def _plain(value: date) -> date:
    return date(value.year, value.month, value.day)

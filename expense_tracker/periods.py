from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def month_start(value: date) -> date:
    return value.replace(day=1)


def year_start(value: date) -> date:
    return value.replace(month=1, day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def month_key(value: date) -> str:
    return value.strftime("%Y-%m")


def week_key(value: date) -> str:
    """Week of the year counted from 1 January, weeks starting on Sunday."""
    first = year_start(value)
    days = (value - first).days
    first_weekday = (first.weekday() + 1) % 7
    week_number = (days + first_weekday + 1 + 6) // 7
    return f"{value.year}-W{week_number:02d}"


def trailing_months_window(today: date, months: int) -> tuple[date, date]:
    """First day of the month ``months - 1`` months back, through ``today``."""
    if months < 1:
        raise ValueError("months must be at least 1.")
    return shift_month(today, -(months - 1)), today


def comparison_window(now: datetime, period: str | None) -> tuple[datetime, datetime]:
    """Snapshots taken on or after the first instant and before the second one
    are candidates for the "previous balance" of a trend comparison.

    The window reaches one month back (a year for ``year-to-date``) and stops
    a day before ``now``.
    """
    months = -12 if period == "year-to-date" else -1
    start = datetime.combine(shift_month_keep_day(now.date(), months), now.time())
    return start, now - timedelta(days=1)


def percentage(part: Decimal, whole: Decimal, places: str = "0.01") -> Decimal:
    """``part / whole * 100``; zero when ``whole`` is zero."""
    if whole == ZERO:
        return ZERO
    return (part / whole * HUNDRED).quantize(Decimal(places), rounding=ROUND_HALF_UP)

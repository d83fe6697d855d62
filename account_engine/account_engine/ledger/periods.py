"""Billing period arithmetic.

A billing period is a calendar month in UTC, keyed by its first day.
:func:`current_period_start` is the only function that derives a period
key from a timestamp; every component that reads or writes ledger rows
goes through it.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def current_period_start(now: datetime | None = None) -> date:
    """First day of the UTC calendar month containing *now*.

    Naive datetimes are interpreted as UTC.
    """
    moment = _as_utc(now) if now is not None else datetime.now(UTC)
    return date(moment.year, moment.month, 1)


def next_period_start(period_start: date) -> date:
    """First day of the month after *period_start*."""
    if period_start.month == 12:
        return date(period_start.year + 1, 1, 1)
    return date(period_start.year, period_start.month + 1, 1)


def period_bounds(period_start: date) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC datetime interval covering the period."""
    start = datetime.combine(period_start, time.min, tzinfo=UTC)
    end = datetime.combine(next_period_start(period_start), time.min, tzinfo=UTC)
    return start, end


def parse_period(value: str) -> date:
    """Parse a ``YYYY-MM`` string into a period key.

    Raises
    ------
    ValueError
        If *value* is not a valid year-month.
    """
    try:
        parsed = datetime.strptime(value.strip(), "%Y-%m")
    except ValueError:
        raise ValueError(f"Invalid period {value!r}; expected YYYY-MM") from None
    return date(parsed.year, parsed.month, 1)

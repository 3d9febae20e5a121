from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from auditkpi.domain.events import (
    PERIOD_DAILY,
    PERIOD_HOURLY,
    PERIOD_MONTHLY,
    PERIOD_QUARTERLY,
    PERIOD_TYPES,
    PERIOD_WEEKLY,
    PERIOD_YEARLY,
)


@dataclass(frozen=True)
class PeriodWindow:
    # Half-open [start, end) window in UTC.
    period_type: str
    start: datetime
    end: datetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | date) -> datetime:
    # Treat naive datetimes (and bare dates) as UTC so bucket math never depends on host timezone.
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calendar_parts(moment: datetime) -> dict[str, Any]:
    """Decompose an event timestamp into the calendar columns stored on audit rows."""
    current = ensure_utc(moment)
    iso_year, iso_week, iso_weekday = current.isocalendar()
    return {
        "event_at": current,
        "event_date": current.date(),
        "event_year": current.year,
        "event_month": current.month,
        "event_day": current.day,
        "event_day_of_week": iso_weekday,
        "event_iso_year": iso_year,
        "event_iso_week": iso_week,
        "event_quarter": (current.month - 1) // 3 + 1,
        "event_hour": current.hour,
        "partition_key": partition_key(current.year, current.month),
    }


def partition_key(year: int, month: int) -> str:
    return f"{year:04d}_{month:02d}"


def partition_keys_between(start: datetime | date, end: datetime | date) -> list[str]:
    """Return the monthly partition keys a closed [start, end] range touches."""
    first = ensure_utc(start)
    last = ensure_utc(end)
    if last < first:
        return []
    keys: list[str] = []
    year, month = first.year, first.month
    while (year, month) <= (last.year, last.month):
        keys.append(partition_key(year, month))
        year, month = _add_months(year, month, 1)
    return keys


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def add_months(moment: datetime, months: int) -> datetime:
    year, month = _add_months(moment.year, moment.month, months)
    return moment.replace(year=year, month=month, day=1)


def subtract_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        # Feb 29 has no counterpart in non-leap years.
        return moment.replace(year=moment.year - years, day=28)


def period_window(period_date: datetime | date, period_type: str) -> PeriodWindow:
    """Return the bucket of ``period_type`` that contains ``period_date``."""
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"unsupported period type: {period_type}")
    moment = ensure_utc(period_date)
    if period_type == PERIOD_HOURLY:
        start = moment.replace(minute=0, second=0, microsecond=0)
        return PeriodWindow(period_type, start, start + timedelta(hours=1))
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_type == PERIOD_DAILY:
        return PeriodWindow(period_type, day_start, day_start + timedelta(days=1))
    if period_type == PERIOD_WEEKLY:
        start = day_start - timedelta(days=day_start.isoweekday() - 1)
        return PeriodWindow(period_type, start, start + timedelta(days=7))
    if period_type == PERIOD_MONTHLY:
        start = day_start.replace(day=1)
        return PeriodWindow(period_type, start, add_months(start, 1))
    if period_type == PERIOD_QUARTERLY:
        first_month = ((day_start.month - 1) // 3) * 3 + 1
        start = day_start.replace(month=first_month, day=1)
        return PeriodWindow(period_type, start, add_months(start, 3))
    start = day_start.replace(month=1, day=1)
    return PeriodWindow(PERIOD_YEARLY, start, start.replace(year=start.year + 1))


def month_label(moment: datetime | date) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"

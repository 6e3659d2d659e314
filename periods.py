from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class Period:
    start: date
    end: date


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def first_day_of_month(day: date) -> date:
    return day.replace(day=1)


def last_day_of_month(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def plus_months(day: date, n: int) -> date:
    """Step ``n`` calendar months from ``day``.

    The result lands on the first of the target month, so stepping from the
    31st never spills over into the month after.
    """
    index = day.year * 12 + (day.month - 1) + n
    year, month = divmod(index, 12)
    return date(year, month + 1, 1)


def month_period(day: Optional[date] = None) -> Period:
    day = day or utc_today()
    return Period(first_day_of_month(day), last_day_of_month(day))

from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_anchor(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_end(d: date) -> date:
    return add_months(month_anchor(d), 1) - date.resolution


def month_period(d: date) -> Period:
    start = month_anchor(d)
    return Period(f"{start.year:04d}-{start.month:02d}", start, month_end(start))


def resolve_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Parse ``YYYY-MM`` (or a full ISO date) into that month's period."""
    today = today or date.today()
    if not value:
        return month_period(today)
    value = value.strip()
    try:
        if len(value) == 7:
            year_str, month_str = value.split("-", 1)
            return month_period(date(int(year_str), int(month_str), 1))
        return month_period(date.fromisoformat(value))
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value!r}") from exc

"""Pay-cycle calendar.

Accounting periods are labeled like calendar months (``"2026-01"``) but run
from the 25th of the previous month (the 19th when that month is December),
moved to Monday when the day lands on a weekend. Explicit overrides stored in
the ``cycles`` table replace the computed range for their key.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Mapping, Optional, Union

STANDARD_START_DAY = 25
DECEMBER_START_DAY = 19


@dataclass(frozen=True)
class Period:
    key: str
    start: date
    end: date


@dataclass(frozen=True)
class CycleOverride:
    key: str
    start_date: date
    end_date: date

    def contains(self, target: date) -> bool:
        return self.start_date <= target <= self.end_date


Overrides = Union[Mapping[str, CycleOverride], Iterable[CycleOverride], None]


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months_clamped(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def next_working_day(target: date) -> date:
    weekday = target.weekday()
    if weekday == 5:
        return target + timedelta(days=2)
    if weekday == 6:
        return target + timedelta(days=1)
    return target


def period_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def parse_period_key(key: str) -> tuple[int, int]:
    try:
        year_str, month_str = key.split("-", 1)
        year = int(year_str)
        month = int(month_str)
    except ValueError as exc:
        raise ValueError(f"Invalid period key: {key!r}") from exc
    if len(year_str) != 4 or len(month_str) != 2 or not 1 <= month <= 12:
        raise ValueError(f"Invalid period key: {key!r}")
    return year, month


def next_period_key(key: str, count: int = 1) -> str:
    year, month = parse_period_key(key)
    total = year * 12 + (month - 1) + count
    return period_key(total // 12, total % 12 + 1)


def period_label(key: str) -> str:
    year, month = parse_period_key(key)
    return date(year, month, 1).strftime("%b %Y")


def standard_cycle_start(year: int, month: int) -> date:
    """Start of the period labeled ``year-month`` without overrides."""
    if month == 1:
        prev_year, prev_month = year - 1, 12
    else:
        prev_year, prev_month = year, month - 1
    base_day = DECEMBER_START_DAY if prev_month == 12 else STANDARD_START_DAY
    return next_working_day(date(prev_year, prev_month, base_day))


def _as_list(overrides: Overrides) -> list[CycleOverride]:
    if overrides is None:
        return []
    if isinstance(overrides, Mapping):
        return list(overrides.values())
    return list(overrides)


def override_map(overrides: Overrides) -> Mapping[str, CycleOverride]:
    if overrides is None:
        return {}
    if isinstance(overrides, Mapping):
        return overrides
    return {o.key: o for o in overrides}


def period_key_for_date(target: date, overrides: Overrides = None) -> str:
    for override in _as_list(overrides):
        if override.contains(target):
            return override.key

    own_key = period_key(target.year, target.month)
    next_key = next_period_key(own_key)
    # The next period always starts inside the date's own calendar month.
    boundary = standard_cycle_start(*parse_period_key(next_key))
    if target >= boundary:
        return next_key
    return own_key


def period_start(key: str, overrides: Overrides = None) -> date:
    override = override_map(overrides).get(key)
    if override:
        return override.start_date
    return standard_cycle_start(*parse_period_key(key))


def period_bounds(key: str, overrides: Overrides = None) -> Period:
    mapping = override_map(overrides)
    override = mapping.get(key)
    if override:
        return Period(key, override.start_date, override.end_date)
    start = standard_cycle_start(*parse_period_key(key))
    end = period_start(next_period_key(key), mapping) - timedelta(days=1)
    if end < start:
        end = start
    return Period(key, start, end)


def year_period_keys(year: int) -> list[str]:
    return [period_key(year, month) for month in range(1, 13)]


def default_cycle(key: str) -> CycleOverride:
    """The computed range for ``key``, used to prefill a custom override."""
    bounds = period_bounds(key)
    return CycleOverride(key=key, start_date=bounds.start, end_date=bounds.end)


def current_period(today: date, overrides: Optional[Overrides] = None) -> Period:
    return period_bounds(period_key_for_date(today, overrides), overrides)

"""Billing-cycle boundary arithmetic.

Pure, deterministic functions with no I/O.  Two period types exist:

* ``weekly``  -- cycles run Monday through Sunday; renewal is the following
  Monday.
* ``monthly`` -- cycles run from the 1st to the last calendar day of the
  month; renewal is the 1st of the following month.

Weekday numbering follows the subscription model: ``0`` = Sunday through
``6`` = Saturday.  A subscription stores its delivery weekdays as a bitmask
where bit *i* is set when weekday *i* is selected.
"""

from __future__ import annotations

import calendar
from collections.abc import Collection, Iterable, Iterator
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from meal_engine.models.enums import PeriodType

ALL_WEEKDAYS_MASK = 0b1111111
WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


@dataclass(frozen=True)
class Cycle:
    """Boundaries of one billing period instance (inclusive start and end)."""

    period_type: PeriodType
    cycle_start: date
    cycle_end: date
    renewal_date: date

    def contains(self, day: date) -> bool:
        return self.cycle_start <= day <= self.cycle_end

    def days(self, start: date | None = None) -> Iterator[date]:
        """Iterate the cycle's dates, optionally beginning at *start*."""
        return iter_dates(max(start, self.cycle_start) if start else self.cycle_start, self.cycle_end)

    @property
    def length_days(self) -> int:
        return (self.cycle_end - self.cycle_start).days + 1


class CyclePosition(str, Enum):
    """Where a date falls relative to the cycle containing a reference date."""

    PAST = "past"
    CURRENT = "current"
    NEXT = "next"
    FUTURE = "future"


# ---------------------------------------------------------------------------
# Boundaries
# ---------------------------------------------------------------------------


def _month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def compute_cycle(
    period_type: PeriodType | str,
    reference: date,
    *,
    next_boundary: bool = False,
) -> Cycle:
    """Return the cycle containing *reference*.

    Parameters
    ----------
    period_type:
        ``weekly`` or ``monthly``.
    reference:
        Any date; the returned cycle contains it unless *next_boundary* applies.
    next_boundary:
        When *reference* is itself a cycle start (a Monday for weekly, the 1st
        for monthly), return the cycle that begins at the following boundary
        instead.  Used when a group starting on a boundary should be billed
        from the next period.

    Returns
    -------
    Cycle
        The cycle boundaries.

    Raises
    ------
    ValueError
        If *period_type* is not a known period type.
    """
    period = PeriodType(period_type)

    if period == PeriodType.WEEKLY:
        # date.weekday(): Monday=0 ... Sunday=6
        start = reference - timedelta(days=reference.weekday())
        if next_boundary and start == reference:
            start = start + timedelta(days=7)
        return Cycle(
            period_type=period,
            cycle_start=start,
            cycle_end=start + timedelta(days=6),
            renewal_date=start + timedelta(days=7),
        )

    start = reference.replace(day=1)
    if next_boundary and start == reference:
        start = _first_of_next_month(start)
    return Cycle(
        period_type=period,
        cycle_start=start,
        cycle_end=_month_end(start),
        renewal_date=_first_of_next_month(start),
    )


def next_cycle(cycle: Cycle) -> Cycle:
    """Return the cycle that begins on *cycle*'s renewal date."""
    return compute_cycle(cycle.period_type, cycle.renewal_date)


def classify_date(period_type: PeriodType | str, reference: date, day: date) -> CyclePosition:
    """Classify *day* as past/current/next/future relative to *reference*'s cycle."""
    current = compute_cycle(period_type, reference)
    if day < current.cycle_start:
        return CyclePosition.PAST
    if current.contains(day):
        return CyclePosition.CURRENT
    if next_cycle(current).contains(day):
        return CyclePosition.NEXT
    return CyclePosition.FUTURE


# ---------------------------------------------------------------------------
# Weekdays
# ---------------------------------------------------------------------------


def weekday_index(day: date) -> int:
    """Return the weekday of *day* with ``0`` = Sunday ... ``6`` = Saturday."""
    return (day.weekday() + 1) % 7


def weekdays_to_mask(weekdays: Iterable[int]) -> int:
    """Encode weekday numbers (0 = Sunday) as a bitmask."""
    mask = 0
    for wd in weekdays:
        if not 0 <= wd <= 6:
            raise ValueError(f"Weekday must be between 0 (Sunday) and 6 (Saturday), got {wd}")
        mask |= 1 << wd
    return mask


def mask_to_weekdays(mask: int) -> list[int]:
    return [wd for wd in range(7) if mask & (1 << wd)]


def mask_includes(mask: int, day: date) -> bool:
    return bool(mask & (1 << weekday_index(day)))


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every date from *start* to *end* inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def count_scheduled_meals(
    start: date,
    end: date,
    weekday_mask: int,
    skip_dates: Collection[date] = (),
) -> int:
    """Count delivery dates in ``[start, end]`` on selected weekdays, excluding *skip_dates*."""
    return sum(1 for day in iter_dates(start, end) if mask_includes(weekday_mask, day) and day not in skip_dates)

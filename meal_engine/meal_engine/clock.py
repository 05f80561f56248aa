"""Injectable time source.

Every cutoff, expiry and cooldown decision in the engine reads the current
instant through a :class:`Clock` rather than calling ``datetime.now()``
directly, so that the boundary behaviour can be exercised deterministically.
"""

from __future__ import annotations

import abc
from datetime import UTC, date, datetime, time, timedelta, tzinfo


class Clock(abc.ABC):
    """Source of the current instant (timezone-aware, UTC).

    Subclasses must implement :meth:`now`.
    """

    @abc.abstractmethod
    def now(self) -> datetime:
        """Return the current instant."""

    def today(self, tz: tzinfo) -> date:
        """Return the calendar date of :meth:`now` in the platform timezone."""
        return self.now().astimezone(tz).date()


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock(Clock):
    """A clock frozen at a given instant until moved explicitly.

    Parameters
    ----------
    instant:
        The initial instant.  Naive datetimes are interpreted as UTC.
    """

    def __init__(self, instant: datetime) -> None:
        self._instant = _as_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = _as_utc(instant)

    def advance(self, **delta: float) -> datetime:
        """Move the clock forward by ``timedelta(**delta)`` and return the new instant."""
        self._instant = self._instant + timedelta(**delta)
        return self._instant


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_instant(day: date, at: time, tz: tzinfo) -> datetime:
    """Return the UTC instant of wall-clock *at* on *day* in timezone *tz*."""
    return datetime.combine(day, at, tzinfo=tz).astimezone(UTC)

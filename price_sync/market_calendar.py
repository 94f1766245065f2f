"""Timezone-aware calendar arithmetic.

All day boundaries are computed in an explicit reference timezone, never in
host-local time. Day lengths therefore follow daylight-saving transitions:
the spring-forward day is 23 hours long and the fall-back day 25 hours.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Europe/Vilnius"


def _aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


class MarketCalendar:
    """Calendar-day boundaries in a reference timezone."""

    def __init__(self, timezone: str = DEFAULT_TIMEZONE) -> None:
        self._tz_name = timezone
        self._tz = ZoneInfo(timezone)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    @property
    def timezone(self) -> str:
        return self._tz_name

    def local_date(self, instant: datetime | int) -> date:
        """Reference-timezone date of an instant (datetime or unix seconds)."""
        if isinstance(instant, int):
            instant = datetime.fromtimestamp(instant, tz=UTC)
        return _aware(instant).astimezone(self._tz).date()

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """UTC instants ``[start, end)`` of a local calendar day."""
        start = _local_midnight(day, self._tz).astimezone(UTC)
        end = _local_midnight(day + timedelta(days=1), self._tz).astimezone(UTC)
        return start, end

    def day_bounds_ts(self, day: date) -> tuple[int, int]:
        """Unix-second bounds ``[start, end)`` of a local calendar day."""
        start, end = self.day_bounds(day)
        return int(start.timestamp()), int(end.timestamp())

    def day_length_hours(self, day: date) -> float:
        start, end = self.day_bounds(day)
        return (end - start).total_seconds() / 3600

    def range_bounds(self, first: date, last: date) -> tuple[datetime, datetime]:
        """UTC instants covering local days ``first`` through ``last`` inclusive.

        The end is one second before the local midnight following ``last``.
        """
        start, _ = self.day_bounds(first)
        _, end = self.day_bounds(last)
        return start, end - timedelta(seconds=1)


class PublicationWindow:
    """Daily time window in which the provider publishes day-ahead prices."""

    def __init__(self, timezone: str, start: time, end: time) -> None:
        self._tz = ZoneInfo(timezone)
        self.start = start
        self.end = end

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """Window opening and closing instants (UTC) for the window-local day of ``now``."""
        local_day = _aware(now).astimezone(self._tz).date()
        return self.bounds_for(local_day)

    def bounds_for(self, day: date) -> tuple[datetime, datetime]:
        opening = datetime.combine(day, self.start, tzinfo=self._tz).astimezone(UTC)
        closing = datetime.combine(day, self.end, tzinfo=self._tz).astimezone(UTC)
        return opening, closing

    def contains(self, now: datetime) -> bool:
        """Whether ``now`` falls inside the window (both ends inclusive)."""
        opening, closing = self.bounds(now)
        return opening <= _aware(now) <= closing

    def next_opening(self, now: datetime) -> datetime:
        """Next window opening strictly after the current window's start.

        Before today's opening this is today's opening; from the opening on it
        is tomorrow's.
        """
        now = _aware(now)
        opening, _ = self.bounds(now)
        if now < opening:
            return opening
        local_day = now.astimezone(self._tz).date()
        return self.bounds_for(local_day + timedelta(days=1))[0]


def next_daily_occurrence(now: datetime, at: time, tz: ZoneInfo) -> datetime:
    """Next instant (UTC) after ``now`` whose local time in ``tz`` is ``at``."""
    local_now = _aware(now).astimezone(tz)
    candidate = datetime.combine(local_now.date(), at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), at, tzinfo=tz)
    return candidate.astimezone(UTC)


def next_weekly_occurrence(now: datetime, weekday: int, at: time, tz: ZoneInfo) -> datetime:
    """Next instant (UTC) after ``now`` on ``weekday`` (Monday=0) at local ``at``."""
    local_now = _aware(now).astimezone(tz)
    days_ahead = (weekday - local_now.weekday()) % 7
    candidate = datetime.combine(local_now.date() + timedelta(days=days_ahead), at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(candidate.date() + timedelta(days=7), at, tzinfo=tz)
    return candidate.astimezone(UTC)

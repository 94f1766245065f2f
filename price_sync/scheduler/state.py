"""Scheduler state machine.

The window timer is not a chain of self-scheduling callbacks. ``SchedulerState``
holds everything the timer needs to know, transitions go through its methods,
and ``next_fire_time`` computes when the driver loop should wake next. The
loop sleeps until that instant, runs a daily check, records the outcome and
asks again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from price_sync.market_calendar import PublicationWindow


class SchedulerPhase(StrEnum):
    """Phases of the publication-window timer."""

    IDLE = "idle"
    ARMED_PRE_WINDOW = "armed_pre_window"
    ACTIVE_POLLING = "active_polling"
    SUPPRESSED = "suppressed"
    STOPPED = "stopped"


@dataclass
class SchedulerState:
    """Mutable timer state owned by one scheduler instance.

    Attributes:
        phase: Current phase.
        next_run_at: Instant the driver loop is armed for, None when no timer is armed.
        rearm_at: Explicit override for the next firing, set by the watchdog.
        last_check_at: When the last daily check finished.
        suppressed_date: Reference-timezone date whose data is already complete.
        check_in_progress: A daily check is running.
    """

    phase: SchedulerPhase = SchedulerPhase.IDLE
    next_run_at: datetime | None = None
    rearm_at: datetime | None = None
    last_check_at: datetime | None = None
    suppressed_date: date | None = None
    check_in_progress: bool = False

    @property
    def is_stopped(self) -> bool:
        return self.phase == SchedulerPhase.STOPPED

    def arm(self, fire_at: datetime | None, window: PublicationWindow, now: datetime) -> None:
        """Record the instant the driver loop will sleep until."""
        if self.is_stopped:
            return
        self.next_run_at = fire_at
        if self.suppressed_date is not None:
            self.phase = SchedulerPhase.SUPPRESSED
        elif fire_at is None:
            self.phase = SchedulerPhase.IDLE
        elif window.contains(now) and fire_at <= window.bounds(now)[1]:
            self.phase = SchedulerPhase.ACTIVE_POLLING
        else:
            self.phase = SchedulerPhase.ARMED_PRE_WINDOW

    def rearm(self, fire_at: datetime) -> None:
        """Force the next firing to ``fire_at``, replacing the armed timer."""
        if self.is_stopped:
            return
        self.rearm_at = fire_at
        self.next_run_at = fire_at

    def disarm(self) -> None:
        self.next_run_at = None
        self.rearm_at = None

    def begin_check(self) -> None:
        self.check_in_progress = True
        self.rearm_at = None

    def record_check(self, finished_at: datetime) -> None:
        self.check_in_progress = False
        self.last_check_at = finished_at

    def suppress(self, day: date) -> None:
        """Stop polling for the rest of ``day``."""
        self.suppressed_date = day
        self.next_run_at = None
        self.rearm_at = None
        if not self.is_stopped:
            self.phase = SchedulerPhase.SUPPRESSED

    def clear_suppression(self) -> None:
        self.suppressed_date = None
        if self.phase == SchedulerPhase.SUPPRESSED:
            self.phase = SchedulerPhase.IDLE

    def stop(self) -> None:
        self.phase = SchedulerPhase.STOPPED
        self.next_run_at = None
        self.rearm_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.phase),
            "next_run_at": _iso(self.next_run_at),
            "last_check_at": _iso(self.last_check_at),
            "suppressed_date": self.suppressed_date.isoformat() if self.suppressed_date else None,
            "check_in_progress": self.check_in_progress,
        }


def _iso(value: datetime | None) -> str | None:
    return value.astimezone(UTC).isoformat() if value is not None else None


def next_fire_time(
    state: SchedulerState,
    now: datetime,
    window: PublicationWindow,
    poll_interval: timedelta,
) -> datetime | None:
    """When the window timer should fire next.

    - Stopped: never.
    - Suppressed: at the next window opening (the check there clears a stale suppression).
    - An explicit re-arm wins over everything else.
    - Before today's window: at the opening. After it: at tomorrow's opening.
    - Inside the window: immediately if no check ran since the opening,
      otherwise one poll interval after the last check, or at tomorrow's
      opening if that falls past the closing.
    """
    if state.is_stopped:
        return None
    if state.suppressed_date is not None:
        return window.next_opening(now)
    if state.rearm_at is not None:
        return state.rearm_at

    opening, closing = window.bounds(now)
    if now < opening:
        return opening
    if now > closing:
        return window.next_opening(now)

    if state.last_check_at is None or state.last_check_at < opening:
        return now
    candidate = state.last_check_at + poll_interval
    if candidate > closing:
        return window.next_opening(now)
    return max(candidate, now)

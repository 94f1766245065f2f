"""SyncScheduler: decides when reconciliation runs.

Independent producers feed one consumer (the reconciliation engine):

- the window timer, a driver loop sleeping until ``next_fire_time`` and
  running a daily check while the provider's publication window is open;
- the watchdog, repairing a missing, stuck or overdue timer;
- the fallback poller, forcing a check inside the window when none ran lately;
- the hourly health tick, detecting host suspension and data gaps;
- weekly full reconciliation and the next-day check.

Every producer goes through the engine's in-flight guard, so overlapping
triggers are dropped rather than queued. No trigger lets an exception escape
its loop.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from price_sync.clock import SystemClock
from price_sync.data.client import UpstreamError
from price_sync.errors import RetryConfig
from price_sync.market_calendar import (
    PublicationWindow,
    next_daily_occurrence,
    next_weekly_occurrence,
)
from price_sync.models import RunKind, RunStatus, SyncRun
from price_sync.scheduler.health import WakeDetector, freshness_issues, freshness_report
from price_sync.scheduler.state import SchedulerState, next_fire_time
from price_sync.sync.engine import BUSY_MESSAGE

if TYPE_CHECKING:
    from collections.abc import Callable

    from price_sync.clock import Clock
    from price_sync.config import SyncConfig
    from price_sync.data.archive import PriceArchive
    from price_sync.data.client import PriceClient
    from price_sync.db.state_manager import StateManager
    from price_sync.market_calendar import MarketCalendar
    from price_sync.sync.backfill import HistoricalBackfill
    from price_sync.sync.completeness import CompletenessOracle
    from price_sync.sync.engine import ReconcileResult, ReconciliationEngine

logger = logging.getLogger(__name__)

# Minutes reported when no check has run yet
NEVER_CHECKED_MINUTES = 999

ACTION_HEALTHY = "No action needed - sync is healthy"
ACTION_NO_TIMER = "Rescheduled - no sync was scheduled"
ACTION_PAST = "Rescheduled - next run was in the past"
ACTION_CLEARED = "Cleared suppression - date changed"
SUPPRESSED_MESSAGE = "Today is already complete, no sync needed"
FALLBACK_SKIPPED = "Dynamic sync is working, no action needed"
FALLBACK_SUPPRESSED = "Polling suppressed for today, completeness re-checked"
NEXT_DAY_AVAILABLE = "Next day data already available"

CATCH_UP_RETRY = RetryConfig(max_retries=3, base_delay_ms=2000)


def _minutes(seconds: float) -> int:
    return int(seconds // 60)


class SyncScheduler:
    """Owns the scheduler state and the background threads driving it.

    Tick methods (``run_daily_check``, ``watchdog_tick``, ``fallback_tick``,
    ``health_tick``, ``run_weekly``, ``run_next_day``) can be called directly
    with an explicit ``now``; ``start`` runs them from daemon threads.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        backfill: HistoricalBackfill,
        oracle: CompletenessOracle,
        archive: PriceArchive,
        state_manager: StateManager,
        client: PriceClient,
        calendar: MarketCalendar,
        config: SyncConfig,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._backfill = backfill
        self._oracle = oracle
        self._archive = archive
        self._state_manager = state_manager
        self._client = client
        self._calendar = calendar
        self._config = config
        self._settings = config.scheduler
        self._clock = clock or SystemClock()
        self._sleep = sleep

        self._window = PublicationWindow(
            config.window.timezone, config.window.start, config.window.end
        )
        self._poll_interval = timedelta(seconds=self._settings.poll_interval)
        self.state = SchedulerState()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: dict[str, threading.Thread] = {}
        self._wake_detector = WakeDetector(
            self._settings.wake_gap, self._settings.wake_process_ceiling
        )
        self._last_health_at: datetime | None = None

    @property
    def window(self) -> PublicationWindow:
        return self._window

    @property
    def is_started(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the driver loop and the periodic jobs."""
        if self.is_started:
            return
        self._stop_event.clear()
        self._wake_event.clear()
        with self._lock:
            self.state = SchedulerState(
                last_check_at=self.state.last_check_at,
                suppressed_date=self.state.suppressed_date,
            )
        self._wake_detector.start(self._clock.now(), self._clock.monotonic())

        s = self._settings
        self._spawn("driver", self._driver_loop)
        self._spawn("watchdog", self._periodic(s.watchdog_interval, self.watchdog_tick))
        self._spawn("fallback", self._periodic(s.fallback_interval, self.fallback_tick))
        self._spawn("health", self._periodic(s.health_interval, self.health_tick))
        self._spawn("weekly", self._occurrences(self._next_weekly_at, self.run_weekly))
        self._spawn("next_day", self._occurrences(self._next_day_at, self.run_next_day))
        logger.info(
            "Scheduler started (window %s-%s %s)",
            self._window.start.strftime("%H:%M"),
            self._window.end.strftime("%H:%M"),
            self._config.window.timezone,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel all timers and wait for the threads to exit."""
        with self._lock:
            self.state.stop()
        self._stop_event.set()
        self._wake_event.set()
        for name, thread in self._threads.items():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Scheduler thread %s did not stop within %.0fs", name, timeout)
        self._threads.clear()
        logger.info("Scheduler stopped")

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=f"price-sync-{name}", daemon=True)
        self._threads[name] = thread
        thread.start()

    def _periodic(self, interval: float, tick: Callable[[], Any]) -> Callable[[], None]:
        def loop() -> None:
            while not self._stop_event.wait(interval):
                tick()

        return loop

    def _occurrences(
        self, next_at: Callable[[datetime], datetime], job: Callable[[], Any]
    ) -> Callable[[], None]:
        def loop() -> None:
            while not self._stop_event.is_set():
                now = self._clock.now()
                delay = (next_at(now) - now).total_seconds()
                if self._stop_event.wait(max(0.0, delay)):
                    return
                job()

        return loop

    def _wake_driver(self) -> None:
        self._wake_event.set()

    # --- Window timer ---

    def _driver_loop(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock.now()
            fire_at = self.arm(now)
            if fire_at is None:
                return
            delay = (fire_at - now).total_seconds()
            if delay > 0:
                self._wake_event.wait(delay)
                self._wake_event.clear()
                continue
            self.run_daily_check()

    def arm(self, now: datetime) -> datetime | None:
        """Compute and record the next window-timer firing."""
        with self._lock:
            self._expire_suppression(now)
            fire_at = next_fire_time(self.state, now, self._window, self._poll_interval)
            self.state.arm(fire_at, self._window, now)
        return fire_at

    def _expire_suppression(self, now: datetime) -> bool:
        suppressed = self.state.suppressed_date
        if suppressed is None or suppressed == self._calendar.local_date(now):
            return False
        logger.info("Clearing suppression for previous day %s", suppressed)
        self.state.clear_suppression()
        return True

    def _check_suppression(self, now: datetime) -> bool:
        """Whether polling stays suppressed for today. Clears stale suppression."""
        today = self._calendar.local_date(now)
        with self._lock:
            self._expire_suppression(now)
            suppressed = self.state.suppressed_date == today
        if not suppressed:
            return False
        if self._oracle.is_date_complete(today).is_complete:
            return True
        logger.info("Today (%s) is no longer complete, clearing suppression", today)
        with self._lock:
            self.state.clear_suppression()
        return False

    def _suppress_if_complete(self, now: datetime) -> None:
        today = self._calendar.local_date(now)
        if self._oracle.is_date_complete(today).is_complete:
            logger.info("Today (%s) is complete, suppressing polling for the rest of the day", today)
            with self._lock:
                self.state.suppress(today)

    def run_daily_check(self, now: datetime | None = None) -> ReconcileResult | None:
        """One window-timer firing: reconcile unless today is already complete.

        Returns:
            The reconciliation result, or None when suppressed or failed.
        """
        started = self._clock.now()
        now = now or started
        with self._lock:
            self.state.begin_check()
        try:
            try:
                suppressed = self._check_suppression(now)
            except Exception as e:
                logger.exception("Daily sync check failed before reconciliation")
                self._log(RunKind.DAILY_CHECK, RunStatus.ERROR, started, error=str(e))
                return None
            if suppressed:
                logger.info("Daily sync suppressed: %s", SUPPRESSED_MESSAGE)
                self._log(RunKind.DAILY_CHECK, RunStatus.SKIPPED, started, details=SUPPRESSED_MESSAGE)
                return None

            try:
                result = self._engine.reconcile(now=now, kind=RunKind.DAILY_CHECK)
                self._suppress_if_complete(now)
            except Exception:
                # The engine has already written the error run
                logger.exception("Daily sync check failed")
                return None
            return result
        finally:
            with self._lock:
                self.state.record_check(self._clock.now())
            self._wake_driver()

    # --- Watchdog ---

    def watchdog_tick(self, now: datetime | None = None) -> str:
        """Repair the window timer if it is missing, stuck or overdue.

        Returns:
            The action taken, also written to the run log.
        """
        started = self._clock.now()
        now = now or started
        try:
            action = self._watchdog(now)
        except Exception as e:
            logger.exception("Watchdog check failed")
            self._log(RunKind.WATCHDOG, RunStatus.ERROR, started, error=str(e))
            return f"Error: {e}"
        if action != ACTION_HEALTHY:
            logger.warning("Watchdog: %s", action)
        self._log(RunKind.WATCHDOG, RunStatus.SUCCESS, started, details=action)
        return action

    def _watchdog(self, now: datetime) -> str:
        in_window = self._window.contains(now)
        today = self._calendar.local_date(now)

        with self._lock:
            st = self.state
            if st.suppressed_date is not None:
                if st.suppressed_date != today:
                    st.clear_suppression()
                    self._wake_driver()
                    return ACTION_CLEARED
                return ACTION_HEALTHY

            if in_window and st.next_run_at is None and not st.check_in_progress:
                st.rearm(now)
                self._wake_driver()
                return ACTION_NO_TIMER

            if st.next_run_at is not None:
                until = (st.next_run_at - now).total_seconds()
                tomorrow_opening = self._window.next_opening(now)
                if (
                    in_window
                    and until > self._settings.watchdog_stuck_after
                    and st.next_run_at < tomorrow_opening
                ):
                    st.rearm(now + self._poll_interval)
                    self._wake_driver()
                    return f"Rescheduled - next run was {_minutes(until)} minutes away"
                if until < 0 and not st.check_in_progress:
                    st.rearm(now)
                    self._wake_driver()
                    return ACTION_PAST

            last_check = st.last_check_at
            busy = st.check_in_progress

        if in_window and last_check is not None and not busy:
            since = (now - last_check).total_seconds()
            if since > self._settings.watchdog_forced_check_after:
                self.run_daily_check(now)
                return f"Forced check - last check was {_minutes(since)} minutes ago"
        return ACTION_HEALTHY

    # --- Fallback poller ---

    def fallback_tick(self, now: datetime | None = None) -> str | None:
        """Force a daily check inside the window when none ran recently.

        Returns:
            The logged message, or None outside the window.
        """
        started = self._clock.now()
        now = now or started
        if not self._window.contains(now):
            return None
        try:
            last = self._last_check(now)
            minutes = (
                _minutes((now - last).total_seconds()) if last is not None else NEVER_CHECKED_MINUTES
            )
            if minutes * 60 <= self._settings.fallback_stale_after:
                self._log(RunKind.FALLBACK, RunStatus.SKIPPED, started, details=FALLBACK_SKIPPED)
                return FALLBACK_SKIPPED
            today = self._calendar.local_date(now)
            with self._lock:
                suppressed = self.state.suppressed_date == today
            if suppressed:
                # No timer fires while suppressed, so a stale check is expected.
                logger.info("Fallback: polling suppressed for %s, re-checking completeness", today)
                self.run_daily_check(now)
                with self._lock:
                    still_suppressed = self.state.suppressed_date == today
                if still_suppressed:
                    self._log(
                        RunKind.FALLBACK, RunStatus.SKIPPED, started, details=FALLBACK_SUPPRESSED
                    )
                    return FALLBACK_SUPPRESSED
            else:
                logger.warning("Fallback: dynamic sync appears stuck, forcing check")
                self.run_daily_check(now)
        except Exception as e:
            logger.exception("Fallback check failed")
            self._log(RunKind.FALLBACK, RunStatus.ERROR, started, error=str(e))
            return f"Error: {e}"
        message = f"Forced check - last check was {minutes} minutes ago"
        self._log(RunKind.FALLBACK, RunStatus.SUCCESS, started, details=message)
        return message

    def _last_check(self, now: datetime) -> datetime | None:
        with self._lock:
            in_memory = self.state.last_check_at
        logged = self._state_manager.last_run_at(
            [RunKind.DAILY_CHECK], [RunStatus.SUCCESS, RunStatus.SKIPPED]
        )
        candidates = [t for t in (in_memory, logged) if t is not None and t <= now]
        return max(candidates) if candidates else None

    # --- Health ---

    def health_tick(
        self, now: datetime | None = None, monotonic: float | None = None
    ) -> dict[str, Any]:
        """Detect suspension and data gaps; recover from either.

        Returns:
            The health report, also written to the run log as JSON.
        """
        started = self._clock.now()
        now = now or started
        monotonic = self._clock.monotonic() if monotonic is None else monotonic
        self._last_health_at = now
        try:
            suspend = self._wake_detector.observe(now, monotonic)
            report = freshness_report(self._archive, self._calendar, self._config.entities, now)
            issues = freshness_issues(report, self._settings.catch_up_missing_hours)

            actions = []
            if suspend.suspended:
                self.recover_from_wake(now)
                actions.append("wake_recovery")
            elif issues:
                logger.warning("Health check found data gaps: %s", "; ".join(issues))
                self.trigger_catch_up()
                actions.append("catch_up")

            with self._lock:
                schedule = self.state.to_dict()
            health = {
                "checked_at": now.astimezone(UTC).isoformat(),
                "suspend": {
                    "detected": suspend.suspended,
                    "reason": suspend.reason,
                    "wall_elapsed": suspend.wall_elapsed,
                    "process_elapsed": suspend.process_elapsed,
                },
                "freshness": [item.to_dict() for item in report],
                "issues": issues,
                "actions": actions,
                "schedule": schedule,
            }
        except Exception as e:
            logger.exception("Health check failed")
            self._log(RunKind.HEALTH, RunStatus.ERROR, started, error=str(e))
            return {"checked_at": now.astimezone(UTC).isoformat(), "error": str(e)}

        self._log(RunKind.HEALTH, RunStatus.SUCCESS, started, details=json.dumps(health))
        return health

    def recover_from_wake(self, now: datetime | None = None) -> ReconcileResult | None:
        """Full reconciliation after host suspension, regardless of the window."""
        logger.warning("Running wake-up recovery")
        try:
            result = self._engine.reconcile(now=now, kind=RunKind.WAKE_RECOVERY)
        except Exception:
            logger.exception("Wake-up recovery failed")
            return None
        self._wake_driver()
        return result

    def trigger_catch_up(self) -> ReconcileResult:
        """Reconciliation with exponential backoff on transient errors."""
        result = self._engine.trigger(kind=RunKind.CATCH_UP, retry=CATCH_UP_RETRY, sleep=self._sleep)
        logger.info("Catch-up sync finished: %s (%d records)", result.status, result.ingested)
        return result

    # --- Weekly and next-day jobs ---

    def _next_weekly_at(self, now: datetime) -> datetime:
        s = self._settings
        return next_weekly_occurrence(now, s.weekly_weekday, s.weekly_time, self._calendar.tz)

    def _next_day_at(self, now: datetime) -> datetime:
        return next_daily_occurrence(now, self._settings.next_day_time, self._window.tz)

    def run_weekly(self, now: datetime | None = None) -> ReconcileResult | None:
        """Full reconciliation of every entity."""
        logger.info("Running weekly sync")
        try:
            return self._engine.reconcile(now=now, kind=RunKind.WEEKLY)
        except Exception:
            logger.exception("Weekly sync failed")
            return None

    def run_next_day(self, now: datetime | None = None) -> ReconcileResult | None:
        """Reconcile if the provider holds data newer than the local store."""
        started = self._clock.now()
        if self._engine.is_running:
            self._log(RunKind.NEXT_DAY, RunStatus.SKIPPED, started, details=BUSY_MESSAGE)
            return None
        try:
            needed, reason = self.next_day_sync_needed()
        except Exception as e:
            logger.exception("Next day check failed")
            self._log(RunKind.NEXT_DAY, RunStatus.ERROR, started, error=str(e))
            return None
        if not needed:
            logger.info("Next day sync skipped: %s", reason)
            self._log(RunKind.NEXT_DAY, RunStatus.SKIPPED, started, details=NEXT_DAY_AVAILABLE)
            return None

        logger.info("Next day sync needed: %s", reason)
        try:
            return self._engine.reconcile(now=now, kind=RunKind.NEXT_DAY)
        except Exception:
            logger.exception("Next day sync failed")
            return None

    def next_day_sync_needed(self) -> tuple[bool, str]:
        """Compare each entity's provider latest slot with the local one."""
        for entity in self._config.entities:
            local = self._archive.latest_timestamp(entity)
            if local is None:
                return True, f"{entity.upper()}: no local data"
            try:
                remote = self._client.fetch_latest(entity)
            except (httpx.HTTPError, UpstreamError) as e:
                return True, f"{entity.upper()}: provider latest unavailable ({e})"
            if remote is None:
                continue
            if remote.timestamp > local:
                ahead = _minutes(remote.timestamp - local)
                return True, f"{entity.upper()}: provider is {ahead} minutes ahead"
        return False, "all entities up to date with provider"

    # --- Startup ---

    def startup_sync(self, now: datetime | None = None) -> None:
        """Initial backfill on a fresh store, otherwise wake-up reconciliation."""
        try:
            status = self._state_manager.get_initial_sync_status()
            if not status.is_complete:
                logger.info("Initial sync not complete, running backfill")
                self._backfill.run(now=now)
                return
            logger.info(
                "Initial sync completed through %s (%d records), reconciling",
                status.completed_date,
                status.records_count,
            )
            self._engine.reconcile(now=now, kind=RunKind.STARTUP)
        except Exception:
            logger.exception("Startup sync failed")

    # --- Status ---

    def get_schedule_status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock.now()
        with self._lock:
            status = self.state.to_dict()
        opening, closing = self._window.bounds(now)
        started = self.is_started

        def alive(name: str) -> bool:
            thread = self._threads.get(name)
            return started and thread is not None and thread.is_alive()

        health_next = None
        if started:
            base = self._last_health_at or now
            health_next = (base + timedelta(seconds=self._settings.health_interval)).isoformat()
        status.update(
            {
                "watchdog_active": alive("watchdog"),
                "fallback_active": alive("fallback"),
                "running": self._engine.is_running,
                "in_window": self._window.contains(now),
                "window": {"opens_at": opening.isoformat(), "closes_at": closing.isoformat()},
                "jobs": {
                    "weekly": self._next_weekly_at(now).isoformat() if started else None,
                    "next_day": self._next_day_at(now).isoformat() if started else None,
                    "health": health_next,
                },
            }
        )
        return status

    def _log(
        self,
        kind: RunKind,
        status: RunStatus,
        started: datetime,
        error: str | None = None,
        details: str | None = None,
    ) -> None:
        try:
            self._state_manager.log_run(
                SyncRun(
                    kind=kind,
                    status=status,
                    started_at=started,
                    completed_at=self._clock.now(),
                    error_message=error,
                    details=details,
                )
            )
        except Exception:
            logger.exception("Failed to write %s run record", kind)

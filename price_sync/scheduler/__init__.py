"""Scheduling layer: window timer, watchdog, fallback poller and health tick."""

from price_sync.scheduler.health import WakeDetector, freshness_report
from price_sync.scheduler.service import SyncScheduler
from price_sync.scheduler.state import SchedulerPhase, SchedulerState, next_fire_time

__all__ = [
    "SchedulerPhase",
    "SchedulerState",
    "SyncScheduler",
    "WakeDetector",
    "freshness_report",
    "next_fire_time",
]

"""Suspend/resume detection and data freshness for the hourly health tick."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from price_sync.data.archive import PriceArchive
    from price_sync.market_calendar import MarketCalendar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuspendCheck:
    """Result of comparing wall-clock and process-local elapsed time."""

    suspended: bool
    wall_elapsed: float
    process_elapsed: float
    drift: float
    reason: str | None = None


class WakeDetector:
    """Detects host suspension between observations.

    The monotonic clock does not advance while the host sleeps, the wall clock
    does. Two signals count as a suspend/resume event:

    - since the previous observation the wall clock moved more than
      ``wake_gap`` seconds while process time moved less than ``process_ceiling``;
    - the gap between wall and process time accumulated since start grew by
      more than ``wake_gap`` since the last event.
    """

    def __init__(self, wake_gap: float = 300, process_ceiling: float = 60) -> None:
        self._wake_gap = wake_gap
        self._process_ceiling = process_ceiling
        self._start: tuple[datetime, float] | None = None
        self._last: tuple[datetime, float] | None = None
        self._drift_baseline = 0.0

    @property
    def started(self) -> bool:
        return self._start is not None

    def start(self, now: datetime, monotonic: float) -> None:
        self._start = (now, monotonic)
        self._last = (now, monotonic)
        self._drift_baseline = 0.0

    def observe(self, now: datetime, monotonic: float) -> SuspendCheck:
        if self._start is None or self._last is None:
            self.start(now, monotonic)
            return SuspendCheck(False, 0.0, 0.0, 0.0)

        last_wall, last_mono = self._last
        start_wall, start_mono = self._start
        wall_elapsed = (now - last_wall).total_seconds()
        process_elapsed = monotonic - last_mono
        drift = (now - start_wall).total_seconds() - (monotonic - start_mono)
        self._last = (now, monotonic)

        reason = None
        if wall_elapsed > self._wake_gap and process_elapsed < self._process_ceiling:
            reason = (
                f"wall clock advanced {wall_elapsed:.0f}s, process time {process_elapsed:.0f}s"
            )
        elif drift - self._drift_baseline > self._wake_gap:
            reason = f"wall clock drifted {drift - self._drift_baseline:.0f}s ahead of process time"

        if reason is None:
            return SuspendCheck(False, wall_elapsed, process_elapsed, drift)
        self._drift_baseline = drift
        logger.warning("Suspend/resume detected: %s", reason)
        return SuspendCheck(True, wall_elapsed, process_elapsed, drift, reason)


@dataclass(frozen=True)
class EntityFreshness:
    """How far one entity's newest stored slot is behind the end of tomorrow."""

    entity: str
    latest_timestamp: int | None
    latest_local: str | None
    missing_hours: int | None

    @property
    def has_data(self) -> bool:
        return self.latest_timestamp is not None

    @property
    def is_up_to_date(self) -> bool:
        return self.missing_hours == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "has_data": self.has_data,
            "latest_timestamp": self.latest_timestamp,
            "latest_local": self.latest_local,
            "missing_hours": self.missing_hours,
            "is_up_to_date": self.is_up_to_date,
        }


def freshness_report(
    archive: PriceArchive,
    calendar: MarketCalendar,
    entities: Iterable[str],
    now: datetime,
) -> list[EntityFreshness]:
    """Whole hours between each entity's newest slot and the end of tomorrow."""
    tomorrow = calendar.local_date(now) + timedelta(days=1)
    _, day_after = calendar.day_bounds(tomorrow)
    expected_latest = day_after - timedelta(seconds=1)

    report = []
    for entity in entities:
        latest = archive.latest_timestamp(entity)
        if latest is None:
            report.append(EntityFreshness(entity, None, None, None))
            continue
        latest_at = datetime.fromtimestamp(latest, tz=UTC)
        missing = int((expected_latest - latest_at).total_seconds() // 3600)
        report.append(
            EntityFreshness(
                entity,
                latest,
                latest_at.astimezone(calendar.tz).strftime("%Y-%m-%d %H:%M"),
                max(0, missing),
            )
        )
    return report


def freshness_issues(report: Iterable[EntityFreshness], missing_hours_limit: int) -> list[str]:
    """Human-readable data gaps that warrant a catch-up sync."""
    issues = []
    for item in report:
        if not item.has_data:
            issues.append(f"{item.entity.upper()} has no data")
        elif item.missing_hours is not None and item.missing_hours > missing_hours_limit:
            issues.append(f"{item.entity.upper()} missing {item.missing_hours} hours")
    return issues

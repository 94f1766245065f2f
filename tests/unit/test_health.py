"""Tests for suspend detection and data freshness."""

from __future__ import annotations

from datetime import date, timedelta

from price_sync.data.archive import PriceArchive
from price_sync.market_calendar import MarketCalendar
from price_sync.models import PriceRecord
from price_sync.scheduler.health import WakeDetector, freshness_issues, freshness_report
from tests.fixtures.fakes import WINDOW_NOW, day_records


class TestWakeDetector:
    """Tests for WakeDetector."""

    def test_first_observation_starts(self) -> None:
        detector = WakeDetector()
        check = detector.observe(WINDOW_NOW, 100.0)
        assert detector.started
        assert not check.suspended

    def test_normal_progress(self) -> None:
        detector = WakeDetector()
        detector.start(WINDOW_NOW, 100.0)
        check = detector.observe(WINDOW_NOW + timedelta(hours=1), 3700.0)
        assert not check.suspended
        assert check.wall_elapsed == 3600

    def test_wall_jump_with_little_process_time(self) -> None:
        detector = WakeDetector(wake_gap=300, process_ceiling=60)
        detector.start(WINDOW_NOW, 100.0)

        check = detector.observe(WINDOW_NOW + timedelta(minutes=10), 130.0)

        assert check.suspended
        assert check.reason is not None
        assert "wall clock advanced 600s" in check.reason

    def test_accumulated_drift(self) -> None:
        detector = WakeDetector(wake_gap=300, process_ceiling=60)
        detector.start(WINDOW_NOW, 0.0)

        # An hour of wall time but only 3200s of process time: 400s lost while asleep
        check = detector.observe(WINDOW_NOW + timedelta(hours=1), 3200.0)

        assert check.suspended
        assert check.drift == 400
        assert "drifted" in (check.reason or "")

    def test_drift_rebaselined_after_event(self) -> None:
        detector = WakeDetector(wake_gap=300, process_ceiling=60)
        detector.start(WINDOW_NOW, 0.0)
        assert detector.observe(WINDOW_NOW + timedelta(hours=1), 3200.0).suspended

        # No further drift: the earlier loss must not fire again
        check = detector.observe(WINDOW_NOW + timedelta(hours=2), 6800.0)
        assert not check.suspended


class TestFreshness:
    """Tests for freshness_report and freshness_issues."""

    def test_up_to_date_through_tomorrow(
        self, tmp_archive: PriceArchive, calendar: MarketCalendar
    ) -> None:
        tmp_archive.upsert_prices(day_records(calendar, "lt", date(2025, 4, 11)))

        (item,) = freshness_report(tmp_archive, calendar, ["lt"], WINDOW_NOW)

        assert item.has_data
        assert item.missing_hours == 0
        assert item.is_up_to_date
        assert item.latest_local == "2025-04-11 23:00"

    def test_missing_tomorrow(self, tmp_archive: PriceArchive, calendar: MarketCalendar) -> None:
        tmp_archive.upsert_prices(day_records(calendar, "lt", date(2025, 4, 10)))

        (item,) = freshness_report(tmp_archive, calendar, ["lt"], WINDOW_NOW)

        assert item.missing_hours == 24
        assert not item.is_up_to_date

    def test_no_data(self, tmp_archive: PriceArchive, calendar: MarketCalendar) -> None:
        (item,) = freshness_report(tmp_archive, calendar, ["ee"], WINDOW_NOW)
        assert not item.has_data
        assert item.missing_hours is None
        assert item.to_dict()["is_up_to_date"] is False

    def test_issues_above_limit(self, tmp_archive: PriceArchive, calendar: MarketCalendar) -> None:
        start, _ = calendar.day_bounds_ts(date(2025, 4, 9))
        tmp_archive.upsert_prices(
            day_records(calendar, "lt", date(2025, 4, 10)) + [PriceRecord("ee", start, 1.0)]
        )
        report = freshness_report(tmp_archive, calendar, ["lt", "ee", "lv"], WINDOW_NOW)

        assert freshness_issues(report, 24) == ["EE missing 71 hours", "LV has no data"]

"""Tests for bulk backfill and range sync."""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import replace
from datetime import date
from pathlib import Path

import httpx
import pytest

from price_sync.config import SyncConfig
from price_sync.models import RunKind, RunStatus
from price_sync.runtime import SyncRuntime
from price_sync.sync.backfill import DateChunk, split_half_year_chunks
from price_sync.sync.engine import BUSY_MESSAGE, ReconcileStatus
from tests.fixtures.fakes import FakeClock, FakeUpstream, make_runtime

ENTITIES = ("lt", "ee")
TOMORROW = date(2025, 4, 11)


@pytest.fixture
def long_runtime(
    tmp_db_path: Path, clock: FakeClock, upstream: FakeUpstream, sync_config: SyncConfig
) -> Generator[SyncRuntime]:
    """Runtime whose history spans a half-year boundary."""
    config = replace(sync_config, earliest_date=date(2024, 12, 20))
    rt = make_runtime(tmp_db_path, clock, upstream, config)
    yield rt
    rt.close()


class TestSplitHalfYearChunks:
    """Tests for split_half_year_chunks."""

    def test_splits_at_june_and_december(self) -> None:
        chunks = split_half_year_chunks(date(2012, 7, 1), date(2013, 8, 15))
        assert chunks == [
            DateChunk(date(2012, 7, 1), date(2012, 12, 31)),
            DateChunk(date(2013, 1, 1), date(2013, 6, 30)),
            DateChunk(date(2013, 7, 1), date(2013, 8, 15)),
        ]

    def test_single_day(self) -> None:
        chunks = split_half_year_chunks(date(2025, 4, 10), date(2025, 4, 10))
        assert chunks == [DateChunk(date(2025, 4, 10), date(2025, 4, 10))]
        assert chunks[0].days == 1

    def test_empty_when_inverted(self) -> None:
        assert split_half_year_chunks(date(2025, 4, 11), date(2025, 4, 10)) == []


class TestInitialBackfill:
    """Tests for the one-time historical population."""

    def test_runs_all_chunks_and_marks_true_max_date(
        self, long_runtime: SyncRuntime, upstream: FakeUpstream
    ) -> None:
        upstream.publish(ENTITIES, date(2024, 12, 20), TOMORROW)

        result = long_runtime.backfill.run()

        assert result.status == ReconcileStatus.SUCCESS
        assert [c[:2] for c in upstream.range_calls] == [
            (date(2024, 12, 20), date(2024, 12, 31)),
            (date(2025, 1, 1), date(2025, 4, 12)),
        ]
        # Nominal end is the horizon, but the provider only had data through tomorrow
        status = long_runtime.state.get_initial_sync_status()
        assert status.is_complete
        assert status.completed_date == TOMORROW
        assert status.records_count == result.records_processed
        assert status.last_chunk is None
        wm = long_runtime.state.get_watermark("lt")
        assert wm is not None
        assert (wm.last_complete_date, wm.trustworthy) == (TOMORROW, True)
        run = long_runtime.state.list_runs(kind=RunKind.INITIAL)[0]
        assert run.status == RunStatus.SUCCESS

    def test_resumes_after_failed_chunk(
        self, long_runtime: SyncRuntime, upstream: FakeUpstream
    ) -> None:
        upstream.publish(ENTITIES, date(2024, 12, 20), TOMORROW)
        upstream.range_error = httpx.ConnectError("connection reset")
        upstream.fail_on_range_call = 2

        with pytest.raises(httpx.ConnectError):
            long_runtime.backfill.run()

        progress = long_runtime.state.get_chunk_progress()
        assert progress is not None
        assert progress.last_completed_chunk_end == date(2024, 12, 31)
        assert not long_runtime.state.get_initial_sync_status().is_complete
        assert long_runtime.state.list_runs(kind=RunKind.INITIAL)[0].status == RunStatus.ERROR

        upstream.range_error = None
        upstream.range_calls.clear()
        result = long_runtime.backfill.run()

        assert result.status == ReconcileStatus.SUCCESS
        assert [c[:2] for c in upstream.range_calls] == [(date(2025, 1, 1), date(2025, 4, 12))]
        assert long_runtime.state.get_initial_sync_status().completed_date == TOMORROW

    def test_already_complete(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        runtime.state.mark_initial_sync_complete(TOMORROW, 10)

        result = runtime.backfill.run()

        assert result.status == ReconcileStatus.UP_TO_DATE
        assert upstream.range_calls == []

    def test_force_reruns(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        upstream.publish(ENTITIES, date(2025, 3, 1), TOMORROW)
        runtime.state.mark_initial_sync_complete(date(2025, 3, 5), 10)

        result = runtime.backfill.run(force=True)

        assert result.status == ReconcileStatus.SUCCESS
        assert runtime.state.get_initial_sync_status().completed_date == TOMORROW

    def test_skipped_while_engine_busy(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        with runtime.engine.exclusive():
            result = runtime.backfill.run()

        assert result.status == ReconcileStatus.SKIPPED
        assert result.message == BUSY_MESSAGE
        assert upstream.range_calls == []

    def test_stop_between_chunks_keeps_progress(
        self, long_runtime: SyncRuntime, upstream: FakeUpstream, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        upstream.publish(ENTITIES, date(2024, 12, 20), TOMORROW)
        backfill = long_runtime.backfill
        # Shutdown arrives while waiting between the first and second chunk
        monkeypatch.setattr(backfill, "_sleep", lambda _: backfill.request_stop())

        result = backfill.run()

        assert result.status == ReconcileStatus.SKIPPED
        assert (result.chunks_completed, result.chunks_total) == (1, 2)
        assert result.message == "Stopped after 1 of 2 chunks"
        assert [c[:2] for c in upstream.range_calls] == [(date(2024, 12, 20), date(2024, 12, 31))]
        progress = long_runtime.state.get_chunk_progress()
        assert progress is not None
        assert progress.last_completed_chunk_end == date(2024, 12, 31)
        assert not long_runtime.state.get_initial_sync_status().is_complete
        run = long_runtime.state.list_runs(kind=RunKind.INITIAL)[0]
        assert run.status == RunStatus.SKIPPED
        assert run.details == result.message


class TestSyncRange:
    """Tests for arbitrary range syncs."""

    def test_short_range_single_request(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        upstream.publish(ENTITIES, date(2025, 4, 1), TOMORROW)

        result = runtime.backfill.sync_range(date(2025, 4, 1), date(2025, 4, 5), ["lt"])

        assert result.status == ReconcileStatus.SUCCESS
        assert result.chunks_total == 1
        assert upstream.range_calls == [(date(2025, 4, 1), date(2025, 4, 5), ("lt",))]
        assert result.records_created == 5 * 24
        assert runtime.archive.latest_timestamp("ee") is None
        assert runtime.state.list_runs(kind=RunKind.HISTORICAL)[0].status == RunStatus.SUCCESS

    def test_long_range_uses_half_year_chunks(
        self, runtime: SyncRuntime, upstream: FakeUpstream
    ) -> None:
        result = runtime.backfill.sync_range(date(2024, 3, 1), date(2025, 2, 1))

        assert result.chunks_total == 3
        assert [c[:2] for c in upstream.range_calls] == [
            (date(2024, 3, 1), date(2024, 6, 30)),
            (date(2024, 7, 1), date(2024, 12, 31)),
            (date(2025, 1, 1), date(2025, 2, 1)),
        ]

    def test_resync_reports_no_changes(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        upstream.publish(ENTITIES, date(2025, 4, 1), TOMORROW)
        runtime.backfill.sync_range(date(2025, 4, 1), date(2025, 4, 5))

        result = runtime.backfill.sync_range(date(2025, 4, 1), date(2025, 4, 5))

        assert result.records_processed == 2 * 5 * 24
        assert result.ingested == 0

    def test_inverted_range_rejected(self, runtime: SyncRuntime) -> None:
        with pytest.raises(ValueError, match="after end_date"):
            runtime.backfill.sync_range(date(2025, 4, 5), date(2025, 4, 1))

    def test_failure_logged_and_raised(self, runtime: SyncRuntime, upstream: FakeUpstream) -> None:
        upstream.range_error = httpx.ConnectError("connection refused")

        with pytest.raises(httpx.ConnectError):
            runtime.backfill.sync_range(date(2025, 4, 1), date(2025, 4, 5))

        run = runtime.state.list_runs(kind=RunKind.HISTORICAL)[0]
        assert run.status == RunStatus.ERROR

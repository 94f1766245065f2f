"""In-memory stand-ins for the clock and the price provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from price_sync.config import SyncConfig
from price_sync.data.archive import PriceArchive
from price_sync.db.connection import Database
from price_sync.db.state_manager import StateManager
from price_sync.market_calendar import MarketCalendar
from price_sync.models import PriceRecord
from price_sync.runtime import SyncRuntime
from price_sync.scheduler.service import SyncScheduler
from price_sync.sync.backfill import HistoricalBackfill
from price_sync.sync.completeness import CompletenessOracle
from price_sync.sync.engine import ReconciliationEngine

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from pathlib import Path

# 2025-04-10 14:00 in Vilnius, 13:00 in Paris: inside the publication window
WINDOW_NOW = datetime(2025, 4, 10, 11, 0, tzinfo=UTC)


class FakeClock:
    """Clock whose wall and process time only move when told to."""

    def __init__(self, now: datetime, monotonic: float = 1000.0) -> None:
        self._now = now
        self._monotonic = monotonic

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def set(self, now: datetime) -> None:
        self._monotonic += max(0.0, (now - self._now).total_seconds())
        self._now = now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def suspend(self, seconds: float) -> None:
        """Move wall time only, as a sleeping host does."""
        self._now += timedelta(seconds=seconds)


def day_records(
    calendar: MarketCalendar,
    entity: str,
    day: date,
    interval_minutes: int = 60,
    count: int | None = None,
    spacing: int | None = None,
    price: float = 50.0,
) -> list[PriceRecord]:
    """Records covering one local day, or ``count`` records ``spacing`` seconds apart."""
    start_ts, end_ts = calendar.day_bounds_ts(day)
    step = spacing or interval_minutes * 60
    if count is None:
        count = (end_ts - start_ts) // step
    return [PriceRecord(entity, start_ts + i * step, price + i * 0.01) for i in range(count)]


@dataclass
class FakeUpstream:
    """Provider double serving published records from memory.

    Mirrors the ``PriceClient`` methods the sync layer calls and counts them.
    """

    calendar: MarketCalendar
    published: dict[str, list[PriceRecord]] = field(default_factory=dict)
    range_calls: list[tuple[date, date, tuple[str, ...]]] = field(default_factory=list)
    latest_calls: int = 0
    fail_on_range_call: int | None = None
    range_error: Exception | None = None
    latest_error: Exception | None = None
    closed: bool = False

    def publish(
        self,
        entities: Iterable[str],
        first: date,
        last: date,
        interval_minutes: int = 60,
        price: float = 50.0,
    ) -> None:
        for entity in entities:
            records = self.published.setdefault(entity, [])
            day = first
            while day <= last:
                records.extend(day_records(self.calendar, entity, day, interval_minutes, price=price))
                day += timedelta(days=1)

    def latest_timestamp(self, entity: str) -> int | None:
        records = self.published.get(entity)
        return max(r.timestamp for r in records) if records else None

    def fetch_range(
        self, start: date, end: date, entities: Sequence[str]
    ) -> dict[str, list[PriceRecord]]:
        self.range_calls.append((start, end, tuple(entities)))
        if self.range_error is not None and (
            self.fail_on_range_call is None or len(self.range_calls) == self.fail_on_range_call
        ):
            raise self.range_error
        return {
            entity: [
                r
                for r in self.published.get(entity, [])
                if start <= self.calendar.local_date(r.timestamp) <= end
            ]
            for entity in entities
        }

    def fetch_latest(self, entity: str) -> PriceRecord | None:
        self.latest_calls += 1
        if self.latest_error is not None:
            raise self.latest_error
        records = self.published.get(entity)
        return max(records, key=lambda r: r.timestamp) if records else None

    def latest_record(self, entity: str) -> PriceRecord | None:
        try:
            return self.fetch_latest(entity)
        except Exception:
            return None

    def latest_available_date_all(
        self,
        entities: Iterable[str],
        search_from: date,
        max_days_ahead: int = 7,
        local_latest: Mapping[str, int | None] | None = None,
    ) -> date | None:
        local_latest = local_latest or {}
        best: date | None = None
        for entity in entities:
            remote = self.latest_timestamp(entity)
            if remote is None:
                continue
            local = local_latest.get(entity)
            if local is not None and remote <= local:
                continue
            found = self.calendar.local_date(remote)
            if best is None or found > best:
                best = found
        return best

    def close(self) -> None:
        self.closed = True


def make_runtime(
    db_path: Path,
    clock: FakeClock,
    upstream: FakeUpstream | None = None,
    config: SyncConfig | None = None,
) -> SyncRuntime:
    """Wire every component against ``upstream`` with no real sleeping."""
    config = config or SyncConfig(db_path=db_path)
    calendar = MarketCalendar(config.timezone)
    upstream = upstream or FakeUpstream(calendar)
    database = Database(db_path)
    archive = PriceArchive(calendar=calendar, database=database)
    state = StateManager(database=database)
    oracle = CompletenessOracle(archive, calendar, config.entities, config.bounds)
    client = upstream  # duck-typed PriceClient
    engine = ReconciliationEngine(archive, state, client, oracle, calendar, config, clock)  # type: ignore[arg-type]
    backfill = HistoricalBackfill(
        archive, state, client, engine, calendar, config, clock=clock, sleep=lambda _: None  # type: ignore[arg-type]
    )
    scheduler = SyncScheduler(
        engine,
        backfill,
        oracle,
        archive,
        state,
        client,  # type: ignore[arg-type]
        calendar,
        config,
        clock=clock,
        sleep=lambda _: None,
    )
    return SyncRuntime(
        config=config,
        clock=clock,
        calendar=calendar,
        archive=archive,
        state=state,
        client=client,  # type: ignore[arg-type]
        oracle=oracle,
        engine=engine,
        backfill=backfill,
        scheduler=scheduler,
        database=database,
    )

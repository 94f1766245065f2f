"""Wiring of the sync components for the CLI and the API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from price_sync.clock import SystemClock
from price_sync.data.archive import PriceArchive
from price_sync.data.client import PriceClient
from price_sync.db.connection import Database
from price_sync.db.state_manager import StateManager
from price_sync.market_calendar import MarketCalendar
from price_sync.scheduler.service import SyncScheduler
from price_sync.sync.backfill import HistoricalBackfill
from price_sync.sync.completeness import CompletenessOracle
from price_sync.sync.engine import ReconciliationEngine

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from price_sync.clock import Clock
    from price_sync.config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    """All components sharing one database, client and clock."""

    config: SyncConfig
    clock: Clock
    calendar: MarketCalendar
    archive: PriceArchive
    state: StateManager
    client: PriceClient
    oracle: CompletenessOracle
    engine: ReconciliationEngine
    backfill: HistoricalBackfill
    scheduler: SyncScheduler
    database: Database | None = None

    def close(self) -> None:
        """Stop the scheduler and release connections.

        The database is closed for good: a worker still running afterwards
        fails with ``DatabaseClosedError`` instead of reopening it.
        """
        if self.scheduler.is_started:
            self.scheduler.stop()
        self.client.close()
        self.archive.close()
        self.state.close()
        if self.database is not None:
            self.database.close()


def build_runtime(
    config: SyncConfig,
    clock: Clock | None = None,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncRuntime:
    """Build every component from ``config``.

    Args:
        config: Configuration.
        clock: Clock for scheduling decisions. Defaults to the system clock.
        http_client: Shared ``httpx.Client`` (e.g. with a mock transport).
        sleep: Sleep function for rate-limit pauses and retries.
    """
    clock = clock or SystemClock()
    calendar = MarketCalendar(config.timezone)
    database = Database(config.db_path)
    archive = PriceArchive(calendar=calendar, database=database)
    state = StateManager(database=database)
    client = PriceClient(
        base_url=config.api_url,
        timeout=config.request_timeout,
        calendar=calendar,
        bounds=config.bounds,
        client=http_client,
        range_chunk_days=config.range_chunk_days,
        range_chunk_delay=config.range_chunk_delay,
        lookahead_delay=config.lookahead_delay,
        sleep=sleep,
    )
    oracle = CompletenessOracle(archive, calendar, config.entities, config.bounds)
    engine = ReconciliationEngine(archive, state, client, oracle, calendar, config, clock)
    backfill = HistoricalBackfill(
        archive, state, client, engine, calendar, config, clock=clock, sleep=sleep
    )
    scheduler = SyncScheduler(
        engine,
        backfill,
        oracle,
        archive,
        state,
        client,
        calendar,
        config,
        clock=clock,
        sleep=sleep,
    )
    logger.debug("Runtime built for %s (db %s)", ",".join(config.entities), config.db_path)
    return SyncRuntime(
        config=config,
        clock=clock,
        calendar=calendar,
        archive=archive,
        state=state,
        client=client,
        oracle=oracle,
        engine=engine,
        backfill=backfill,
        scheduler=scheduler,
        database=database,
    )

"""FastAPI dependency injection for price-sync."""

from __future__ import annotations

from fastapi import Request  # noqa: TCH002

from price_sync.data.archive import PriceArchive  # noqa: TCH001
from price_sync.db.state_manager import StateManager  # noqa: TCH001
from price_sync.market_calendar import MarketCalendar  # noqa: TCH001
from price_sync.runtime import SyncRuntime  # noqa: TCH001
from price_sync.scheduler.service import SyncScheduler  # noqa: TCH001
from price_sync.sync.backfill import HistoricalBackfill  # noqa: TCH001
from price_sync.sync.completeness import CompletenessOracle  # noqa: TCH001
from price_sync.sync.engine import ReconciliationEngine  # noqa: TCH001

__all__ = [
    "get_archive",
    "get_backfill",
    "get_calendar",
    "get_engine",
    "get_oracle",
    "get_runtime",
    "get_scheduler",
    "get_state_manager",
]


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime  # type: ignore[no-any-return]


def get_engine(request: Request) -> ReconciliationEngine:
    return get_runtime(request).engine


def get_scheduler(request: Request) -> SyncScheduler:
    return get_runtime(request).scheduler


def get_oracle(request: Request) -> CompletenessOracle:
    return get_runtime(request).oracle


def get_state_manager(request: Request) -> StateManager:
    return get_runtime(request).state


def get_backfill(request: Request) -> HistoricalBackfill:
    return get_runtime(request).backfill


def get_archive(request: Request) -> PriceArchive:
    return get_runtime(request).archive


def get_calendar(request: Request) -> MarketCalendar:
    return get_runtime(request).calendar

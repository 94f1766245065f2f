"""Pytest fixtures for price-sync tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from price_sync.config import SyncConfig
from price_sync.market_calendar import MarketCalendar
from tests.fixtures.fakes import WINDOW_NOW, FakeClock, FakeUpstream, make_runtime

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

    from price_sync.data.archive import PriceArchive
    from price_sync.db import StateManager
    from price_sync.runtime import SyncRuntime


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Create temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def calendar() -> MarketCalendar:
    return MarketCalendar("Europe/Vilnius")


@pytest.fixture
def tmp_archive(tmp_db_path: Path, calendar: MarketCalendar) -> Generator[PriceArchive]:
    """Create temporary PriceArchive for testing."""
    from price_sync.data.archive import PriceArchive

    archive = PriceArchive(tmp_db_path, calendar)
    yield archive
    archive.close()


@pytest.fixture
def tmp_state_manager(tmp_db_path: Path) -> Generator[StateManager]:
    """Create temporary StateManager for testing."""
    from price_sync.db import StateManager

    manager = StateManager(tmp_db_path)
    yield manager
    manager.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(WINDOW_NOW)


@pytest.fixture
def upstream(calendar: MarketCalendar) -> FakeUpstream:
    return FakeUpstream(calendar)


@pytest.fixture
def sync_config(tmp_db_path: Path) -> SyncConfig:
    """Two entities and a short history so backfills stay small."""
    from datetime import date

    return SyncConfig(
        db_path=tmp_db_path,
        entities=("lt", "ee"),
        earliest_date=date(2025, 3, 1),
    )


@pytest.fixture
def runtime(
    tmp_db_path: Path, clock: FakeClock, upstream: FakeUpstream, sync_config: SyncConfig
) -> Generator[SyncRuntime]:
    """All components wired against the fake provider and clock."""
    rt = make_runtime(tmp_db_path, clock, upstream, sync_config)
    yield rt
    rt.close()

"""Integration tests for the FastAPI API endpoints."""

from __future__ import annotations

import asyncio
import threading
from datetime import date
from pathlib import Path  # noqa: TCH003

import pytest
from httpx import ASGITransport, AsyncClient

from price_sync.api import app as app_module
from price_sync.api.app import create_app
from price_sync.config import SyncConfig
from price_sync.market_calendar import MarketCalendar
from tests.fixtures.fakes import WINDOW_NOW, FakeClock, FakeUpstream, day_records, make_runtime


@pytest.fixture()
def tmp_db(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture()
def fake_upstream() -> FakeUpstream:
    upstream = FakeUpstream(MarketCalendar("Europe/Vilnius"))
    upstream.publish(["lt", "ee"], date(2025, 3, 1), date(2025, 4, 11))
    return upstream


@pytest.fixture()
async def client(tmp_db: Path, fake_upstream: FakeUpstream):
    """Create app with temp DB and fake provider, wiring the runtime by hand."""
    app = create_app()

    config = SyncConfig(db_path=tmp_db, entities=("lt", "ee"), earliest_date=date(2025, 3, 1))
    runtime = make_runtime(tmp_db, FakeClock(WINDOW_NOW), fake_upstream, config)
    app.state.runtime = runtime

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.runtime = runtime  # type: ignore[attr-defined]
        yield ac

    runtime.close()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


async def test_health(client: AsyncClient) -> None:
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


async def test_schedule_status(client: AsyncClient) -> None:
    r = await client.get("/api/sync/status")
    assert r.status_code == 200
    data = r.json()
    assert data["state"] == "idle"
    assert data["in_window"] is True
    assert data["running"] is False
    assert data["watchdog_active"] is False
    assert set(data["window"]) == {"opens_at", "closes_at"}
    assert data["jobs"] == {"weekly": None, "next_day": None, "health": None}


# ---------------------------------------------------------------------------
# Manual sync
# ---------------------------------------------------------------------------


async def test_trigger_syncs_everything(client: AsyncClient) -> None:
    r = await client.post("/api/sync/trigger", json={})
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "success"
    assert data["start_date"] == "2025-03-01"
    assert data["end_date"] == "2025-04-11"
    assert data["ingested"] > 0
    assert data["ingested"] == data["records_created"]

    runs = (await client.get("/api/sync/runs", params={"kind": "manual_sync"})).json()["runs"]
    assert len(runs) == 1
    assert runs[0]["status"] == "success"


async def test_trigger_at_parity_fetches_nothing(
    client: AsyncClient, fake_upstream: FakeUpstream
) -> None:
    await client.post("/api/sync/trigger", json={})
    calls = len(fake_upstream.range_calls)

    r = await client.post("/api/sync/trigger", json={"entities": ["lt"]})

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "success"
    assert data["ingested"] == 0
    assert data["message"] == "No new data from provider"
    assert len(fake_upstream.range_calls) == calls


async def test_trigger_unknown_entity(client: AsyncClient) -> None:
    r = await client.post("/api/sync/trigger", json={"entities": ["xx"]})
    assert r.status_code == 400
    assert "xx" in r.json()["detail"]


async def test_historical_sync(client: AsyncClient) -> None:
    r = await client.post(
        "/api/sync/historical",
        json={"start_date": "2025-03-01", "end_date": "2025-03-02", "entities": ["lt"]},
    )
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "success"
    assert data["chunks_total"] == 1
    assert data["records_created"] == 48


async def test_historical_sync_reversed_range(client: AsyncClient) -> None:
    r = await client.post(
        "/api/sync/historical",
        json={"start_date": "2025-03-05", "end_date": "2025-03-01"},
    )
    assert r.status_code == 400


async def test_historical_sync_bad_date(client: AsyncClient) -> None:
    r = await client.post(
        "/api/sync/historical",
        json={"start_date": "March 1st", "end_date": "2025-03-01"},
    )
    assert r.status_code == 400
    assert "start_date" in r.json()["detail"]


async def test_historical_sync_upstream_failure(
    client: AsyncClient, fake_upstream: FakeUpstream
) -> None:
    fake_upstream.range_error = RuntimeError("provider down")
    r = await client.post(
        "/api/sync/historical",
        json={"start_date": "2025-03-01", "end_date": "2025-03-02"},
    )
    assert r.status_code == 502
    assert "provider down" in r.json()["detail"]


# ---------------------------------------------------------------------------
# Completeness
# ---------------------------------------------------------------------------


async def test_completeness_empty_store(client: AsyncClient) -> None:
    r = await client.get("/api/sync/completeness/2025-04-10")
    assert r.status_code == 200
    data = r.json()
    assert data["date"] == "2025-04-10"
    assert data["is_complete"] is False
    assert {e["entity"] for e in data["entities"]} == {"lt", "ee"}


async def test_completeness_after_sync(client: AsyncClient) -> None:
    await client.post("/api/sync/trigger", json={})
    data = (await client.get("/api/sync/completeness/2025-04-10")).json()
    assert data["is_complete"] is True
    assert data["per_entity_counts"] == {"lt": 24, "ee": 24}


async def test_completeness_bad_date(client: AsyncClient) -> None:
    r = await client.get("/api/sync/completeness/not-a-date")
    assert r.status_code == 400


async def test_recent_completeness(client: AsyncClient) -> None:
    runtime = client.runtime  # type: ignore[attr-defined]
    for entity in ("lt", "ee"):
        runtime.archive.upsert_prices(day_records(runtime.calendar, entity, date(2025, 4, 9)))

    data = (await client.get("/api/sync/recent-completeness")).json()

    assert data["yesterday"]["is_complete"] is True
    assert data["today"]["is_complete"] is False
    assert data["needs_sync"] is True


async def test_freshness(client: AsyncClient) -> None:
    runtime = client.runtime  # type: ignore[attr-defined]
    runtime.archive.upsert_prices(day_records(runtime.calendar, "lt", date(2025, 4, 11)))

    r = await client.get("/api/sync/freshness")
    assert r.status_code == 200
    items = {item["entity"]: item for item in r.json()["entities"]}
    assert items["lt"]["is_up_to_date"] is True
    assert items["ee"]["has_data"] is False


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


async def test_watermarks_after_sync(client: AsyncClient) -> None:
    assert (await client.get("/api/sync/watermarks")).json() == {"watermarks": []}

    await client.post("/api/sync/trigger", json={})

    watermarks = (await client.get("/api/sync/watermarks")).json()["watermarks"]
    assert {w["entity"] for w in watermarks} == {"lt", "ee"}
    assert all(w["trustworthy"] for w in watermarks)
    assert all(w["last_complete_date"] == "2025-04-11" for w in watermarks)


async def test_runs_unknown_kind(client: AsyncClient) -> None:
    r = await client.get("/api/sync/runs", params={"kind": "nope"})
    assert r.status_code == 400


async def test_runs_limit_validated(client: AsyncClient) -> None:
    r = await client.get("/api/sync/runs", params={"limit": 0})
    assert r.status_code == 422


async def test_initial_status_not_started(client: AsyncClient) -> None:
    r = await client.get("/api/sync/initial-status")
    assert r.status_code == 200
    assert r.json() == {
        "is_complete": False,
        "completed_date": None,
        "records_count": 0,
        "completed_at": None,
        "last_chunk_end": None,
    }


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def test_shutdown_waits_for_startup_sync(
    tmp_db: Path, fake_upstream: FakeUpstream, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Shutdown stops the startup sync and closes the store only after it returned."""
    config = SyncConfig(db_path=tmp_db, entities=("lt", "ee"), earliest_date=date(2025, 3, 1))
    runtime = make_runtime(tmp_db, FakeClock(WINDOW_NOW), fake_upstream, config)
    monkeypatch.setattr(app_module, "build_runtime", lambda _config: runtime)
    monkeypatch.setenv("PRICE_SYNC_SCHEDULER_ENABLED", "true")

    started = threading.Event()
    released = threading.Event()
    seen: dict[str, bool] = {}

    def slow_startup(now: object = None) -> None:
        started.set()
        released.wait(5)
        seen["closed_during_startup"] = runtime.database.closed

    monkeypatch.setattr(runtime.scheduler, "startup_sync", slow_startup)
    monkeypatch.setattr(runtime.scheduler, "start", lambda: None)
    monkeypatch.setattr(runtime.backfill, "request_stop", released.set)

    app = create_app()
    async with app.router.lifespan_context(app):
        assert await asyncio.to_thread(started.wait, 5)

    assert released.is_set()
    assert seen == {"closed_during_startup": False}
    assert runtime.database.closed

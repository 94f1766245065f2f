"""Sync status and administration router."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from price_sync.api.deps import (
    get_archive,
    get_backfill,
    get_calendar,
    get_engine,
    get_oracle,
    get_runtime,
    get_scheduler,
    get_state_manager,
)
from price_sync.api.schemas.sync import (
    CompletenessResponse,
    FreshnessItem,
    FreshnessResponse,
    HistoricalSyncRequest,
    HistoricalSyncResponse,
    InitialSyncStatusResponse,
    RecentCompletenessResponse,
    ScheduleStatusResponse,
    SyncRunListResponse,
    SyncRunResponse,
    TriggerRequest,
    TriggerResponse,
    WatermarkListResponse,
    WatermarkResponse,
)
from price_sync.data.archive import PriceArchive
from price_sync.db.state_manager import StateManager
from price_sync.market_calendar import MarketCalendar
from price_sync.models import DateCompleteness, RunKind, SyncRun
from price_sync.runtime import SyncRuntime
from price_sync.scheduler.health import freshness_report
from price_sync.scheduler.service import SyncScheduler
from price_sync.sync.backfill import HistoricalBackfill
from price_sync.sync.completeness import CompletenessOracle
from price_sync.sync.engine import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

Engine = Annotated[ReconciliationEngine, Depends(get_engine)]
Scheduler = Annotated[SyncScheduler, Depends(get_scheduler)]
Oracle = Annotated[CompletenessOracle, Depends(get_oracle)]
StateMgr = Annotated[StateManager, Depends(get_state_manager)]
Backfill = Annotated[HistoricalBackfill, Depends(get_backfill)]
Archive = Annotated[PriceArchive, Depends(get_archive)]
Calendar = Annotated[MarketCalendar, Depends(get_calendar)]
Runtime = Annotated[SyncRuntime, Depends(get_runtime)]


def _parse_date(field: str, value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value!r}") from e


def _completeness_to_response(result: DateCompleteness) -> CompletenessResponse:
    return CompletenessResponse(**result.to_dict())


def _run_to_response(run: SyncRun) -> SyncRunResponse:
    return SyncRunResponse(
        id=run.id,
        kind=str(run.kind),
        status=str(run.status),
        records_processed=run.records_processed,
        records_created=run.records_created,
        records_updated=run.records_updated,
        error_message=run.error_message,
        details=run.details,
        started_at=run.started_at.isoformat(),
        completed_at=run.completed_at.isoformat() if run.completed_at else None,
        duration_ms=run.duration_ms,
    )


# --- Schedule ---


@router.get("/status", response_model=ScheduleStatusResponse)
async def schedule_status(scheduler: Scheduler) -> ScheduleStatusResponse:
    return ScheduleStatusResponse(**scheduler.get_schedule_status())


# --- Manual sync ---


@router.post("/trigger", response_model=TriggerResponse)
def trigger_sync(body: TriggerRequest, engine: Engine) -> TriggerResponse:
    try:
        result = engine.trigger(entities=body.entities, kind=RunKind.MANUAL)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TriggerResponse(
        status=str(result.status),
        ingested=result.ingested,
        records_processed=result.records_processed,
        records_created=result.records_created,
        records_updated=result.records_updated,
        start_date=result.start_date.isoformat() if result.start_date else None,
        end_date=result.end_date.isoformat() if result.end_date else None,
        message=result.message,
    )


@router.post("/historical", response_model=HistoricalSyncResponse)
def historical_sync(body: HistoricalSyncRequest, backfill: Backfill) -> HistoricalSyncResponse:
    start = _parse_date("start_date", body.start_date)
    end = _parse_date("end_date", body.end_date)
    try:
        result = backfill.sync_range(start, end, body.entities)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception("Historical sync %s..%s failed", start, end)
        raise HTTPException(status_code=502, detail=f"Historical sync failed: {e}") from e
    return HistoricalSyncResponse(
        status=str(result.status),
        start_date=result.start_date.isoformat() if result.start_date else None,
        end_date=result.end_date.isoformat() if result.end_date else None,
        chunks_total=result.chunks_total,
        ingested=result.ingested,
        records_processed=result.records_processed,
        records_created=result.records_created,
        records_updated=result.records_updated,
        message=result.message,
    )


# --- Completeness ---


@router.get("/completeness/{day}", response_model=CompletenessResponse)
async def date_completeness(day: str, oracle: Oracle) -> CompletenessResponse:
    return _completeness_to_response(oracle.is_date_complete(_parse_date("date", day)))


@router.get("/recent-completeness", response_model=RecentCompletenessResponse)
async def recent_completeness(
    oracle: Oracle, calendar: Calendar, runtime: Runtime
) -> RecentCompletenessResponse:
    today = calendar.local_date(runtime.clock.now())
    today_status = oracle.is_date_complete(today)
    yesterday_status = oracle.is_date_complete(today - timedelta(days=1))
    return RecentCompletenessResponse(
        today=_completeness_to_response(today_status),
        yesterday=_completeness_to_response(yesterday_status),
        needs_sync=not (today_status.is_complete and yesterday_status.is_complete),
    )


@router.get("/freshness", response_model=FreshnessResponse)
async def data_freshness(
    archive: Archive, calendar: Calendar, runtime: Runtime
) -> FreshnessResponse:
    now = runtime.clock.now()
    report = freshness_report(archive, calendar, runtime.config.entities, now)
    return FreshnessResponse(
        checked_at=now.isoformat(),
        entities=[FreshnessItem(**item.to_dict()) for item in report],
    )


# --- State ---


@router.get("/watermarks", response_model=WatermarkListResponse)
async def list_watermarks(state_mgr: StateMgr) -> WatermarkListResponse:
    return WatermarkListResponse(
        watermarks=[
            WatermarkResponse(
                entity=w.entity,
                last_complete_date=w.last_complete_date.isoformat(),
                last_complete_timestamp=w.last_complete_timestamp,
                trustworthy=w.trustworthy,
                last_sync_at=w.last_sync_at.isoformat() if w.last_sync_at else None,
                updated_at=w.updated_at.isoformat() if w.updated_at else None,
            )
            for w in state_mgr.list_watermarks()
        ]
    )


@router.get("/runs", response_model=SyncRunListResponse)
async def list_runs(
    state_mgr: StateMgr,
    kind: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> SyncRunListResponse:
    if kind is not None and kind not in {k.value for k in RunKind}:
        raise HTTPException(status_code=400, detail=f"Unknown run kind: {kind!r}")
    return SyncRunListResponse(
        runs=[_run_to_response(run) for run in state_mgr.list_runs(kind=kind, limit=limit)]
    )


@router.get("/initial-status", response_model=InitialSyncStatusResponse)
async def initial_status(state_mgr: StateMgr) -> InitialSyncStatusResponse:
    status = state_mgr.get_initial_sync_status()
    return InitialSyncStatusResponse(
        is_complete=status.is_complete,
        completed_date=status.completed_date.isoformat() if status.completed_date else None,
        records_count=status.records_count,
        completed_at=status.completed_at.isoformat() if status.completed_at else None,
        last_chunk_end=(
            status.last_chunk.last_completed_chunk_end.isoformat() if status.last_chunk else None
        ),
    )

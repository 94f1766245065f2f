"""Sync domain schemas."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ScheduleStatusResponse(BaseModel):
    state: str
    next_run_at: str | None
    last_check_at: str | None
    suppressed_date: str | None
    check_in_progress: bool
    watchdog_active: bool
    fallback_active: bool
    running: bool
    in_window: bool
    window: dict[str, str]
    jobs: dict[str, str | None]


class TriggerRequest(BaseModel):
    entities: list[str] | None = None


class TriggerResponse(BaseModel):
    status: str
    ingested: int
    records_processed: int
    records_created: int
    records_updated: int
    start_date: str | None
    end_date: str | None
    message: str | None


class HistoricalSyncRequest(BaseModel):
    start_date: str
    end_date: str
    entities: list[str] | None = None


class HistoricalSyncResponse(BaseModel):
    status: str
    start_date: str | None
    end_date: str | None
    chunks_total: int
    ingested: int
    records_processed: int
    records_created: int
    records_updated: int
    message: str | None


class EntityCompletenessItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity: str
    count: int
    expected_min: int
    expected_max: int
    interval_minutes: int
    is_complete: bool


class CompletenessResponse(BaseModel):
    date: str
    is_complete: bool
    per_entity_counts: dict[str, int]
    expected_min: int
    expected_max: int
    entities: list[EntityCompletenessItem]


class RecentCompletenessResponse(BaseModel):
    today: CompletenessResponse
    yesterday: CompletenessResponse
    needs_sync: bool


class WatermarkResponse(BaseModel):
    entity: str
    last_complete_date: str
    last_complete_timestamp: int | None
    trustworthy: bool
    last_sync_at: str | None
    updated_at: str | None


class WatermarkListResponse(BaseModel):
    watermarks: list[WatermarkResponse]


class SyncRunResponse(BaseModel):
    id: int | None
    kind: str
    status: str
    records_processed: int
    records_created: int
    records_updated: int
    error_message: str | None
    details: str | None
    started_at: str
    completed_at: str | None
    duration_ms: int | None


class SyncRunListResponse(BaseModel):
    runs: list[SyncRunResponse]


class InitialSyncStatusResponse(BaseModel):
    is_complete: bool
    completed_date: str | None
    records_count: int
    completed_at: str | None
    last_chunk_end: str | None


class FreshnessItem(BaseModel):
    entity: str
    has_data: bool
    latest_timestamp: int | None
    latest_local: str | None
    missing_hours: int | None
    is_up_to_date: bool


class FreshnessResponse(BaseModel):
    checked_at: str
    entities: list[FreshnessItem] = Field(default_factory=list)

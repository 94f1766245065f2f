"""API request/response schemas."""

from __future__ import annotations

from price_sync.api.schemas.sync import (
    CompletenessResponse,
    EntityCompletenessItem,
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

__all__ = [
    "CompletenessResponse",
    "EntityCompletenessItem",
    "FreshnessItem",
    "FreshnessResponse",
    "HistoricalSyncRequest",
    "HistoricalSyncResponse",
    "InitialSyncStatusResponse",
    "RecentCompletenessResponse",
    "ScheduleStatusResponse",
    "SyncRunListResponse",
    "SyncRunResponse",
    "TriggerRequest",
    "TriggerResponse",
    "WatermarkListResponse",
    "WatermarkResponse",
]

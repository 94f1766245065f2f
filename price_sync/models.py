"""Data model shared by the store, the engine and the scheduler."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any


class RunKind(StrEnum):
    """Kinds of entries in the run log."""

    DAILY_CHECK = "daily_sync_check"
    WEEKLY = "weekly_sync"
    NEXT_DAY = "nextday_sync"
    WATCHDOG = "watchdog_check"
    FALLBACK = "fallback_cron"
    HEALTH = "health_check"
    CATCH_UP = "catchup_sync"
    WAKE_RECOVERY = "wake_recovery"
    STARTUP = "startup_sync"
    MANUAL = "manual_sync"
    INITIAL = "initial_sync"
    HISTORICAL = "historical_sync"


class RunStatus(StrEnum):
    """Outcome of a run."""

    STARTED = "started"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PriceRecord:
    """One price for one entity and time-slot start (unix seconds)."""

    entity: str
    timestamp: int
    price: float


@dataclass(frozen=True)
class SyncWatermark:
    """Per-entity sync cursor.

    When ``trustworthy`` is true every date up to and including
    ``last_complete_date`` is complete for the entity.
    """

    entity: str
    last_complete_date: date
    last_complete_timestamp: int | None
    trustworthy: bool
    last_sync_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class EntityCompleteness:
    """Record count of one entity for one date against its expected bounds."""

    entity: str
    count: int
    expected_min: int
    expected_max: int
    interval_minutes: int

    @property
    def is_complete(self) -> bool:
        return self.expected_min <= self.count <= self.expected_max


@dataclass(frozen=True)
class DateCompleteness:
    """Completeness of one local calendar date across entities."""

    date: date
    entities: tuple[EntityCompleteness, ...]

    @property
    def per_entity_counts(self) -> dict[str, int]:
        return {e.entity: e.count for e in self.entities}

    @property
    def expected_min(self) -> int:
        return min((e.expected_min for e in self.entities), default=0)

    @property
    def expected_max(self) -> int:
        return max((e.expected_max for e in self.entities), default=0)

    @property
    def is_complete(self) -> bool:
        return bool(self.entities) and all(e.is_complete for e in self.entities)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "date": self.date.isoformat(),
            "is_complete": self.is_complete,
            "per_entity_counts": self.per_entity_counts,
            "expected_min": self.expected_min,
            "expected_max": self.expected_max,
            "entities": [
                {**asdict(e), "is_complete": e.is_complete} for e in self.entities
            ],
        }


@dataclass
class SyncRun:
    """Run-log entry, written once when the run finishes."""

    kind: RunKind
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    error_message: str | None = None
    details: str | None = None
    id: int | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class ChunkProgress:
    """Bulk backfill progress."""

    last_completed_chunk_end: date
    records_in_chunk: int


@dataclass(frozen=True)
class InitialSyncStatus:
    """Whether the one-time historical backfill has finished."""

    is_complete: bool
    completed_date: date | None = None
    records_count: int = 0
    completed_at: datetime | None = None
    last_chunk: ChunkProgress | None = None


@dataclass
class IngestResult:
    """Counts from one ingest transaction."""

    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    per_entity: dict[str, int] = field(default_factory=dict)

    @property
    def ingested(self) -> int:
        """Rows that were inserted or whose price changed."""
        return self.records_created + self.records_updated

    def merge(self, other: IngestResult) -> None:
        self.records_processed += other.records_processed
        self.records_created += other.records_created
        self.records_updated += other.records_updated
        for entity, count in other.per_entity.items():
            self.per_entity[entity] = self.per_entity.get(entity, 0) + count

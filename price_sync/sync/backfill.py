"""Bulk historical backfill and manual range sync.

The initial population runs from the provider's earliest date to the sync
horizon in half-year chunks (January-June, July-December). Each chunk is
fetched and committed on its own and its end date recorded, so an
interrupted backfill resumes at the following chunk.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from price_sync.clock import SystemClock
from price_sync.data.ingest import ingest_batch
from price_sync.models import IngestResult, RunKind, RunStatus, SyncRun
from price_sync.sync.engine import BUSY_MESSAGE, ReconcileStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from price_sync.clock import Clock
    from price_sync.config import SyncConfig
    from price_sync.data.archive import PriceArchive
    from price_sync.data.client import PriceClient
    from price_sync.db.state_manager import StateManager
    from price_sync.market_calendar import MarketCalendar
    from price_sync.sync.engine import ReconciliationEngine

logger = logging.getLogger(__name__)

# Manual ranges longer than this are fetched in half-year chunks
RANGE_CHUNK_THRESHOLD_DAYS = 180


class BackfillStopped(Exception):
    """A stop was requested between chunks; completed chunks stay committed."""

    def __init__(self, completed: int, total: int, totals: IngestResult) -> None:
        super().__init__(f"Stopped after {completed} of {total} chunks")
        self.completed = completed
        self.total = total
        self.totals = totals


@dataclass(frozen=True)
class DateChunk:
    """Inclusive range of local dates fetched as one unit."""

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def split_half_year_chunks(start: date, end: date) -> list[DateChunk]:
    """Split ``[start, end]`` at half-year boundaries (June 30 and December 31)."""
    chunks: list[DateChunk] = []
    current = start
    while current <= end:
        boundary = date(current.year, 6, 30) if current.month <= 6 else date(current.year, 12, 31)
        chunk_end = min(boundary, end)
        chunks.append(DateChunk(current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


@dataclass
class BackfillResult:
    """Outcome of a backfill or range sync."""

    status: ReconcileStatus
    kind: RunKind
    start_date: date | None = None
    end_date: date | None = None
    chunks_total: int = 0
    chunks_completed: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    completed_date: date | None = None
    message: str | None = None

    @property
    def ingested(self) -> int:
        return self.records_created + self.records_updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "kind": str(self.kind),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "chunks_total": self.chunks_total,
            "chunks_completed": self.chunks_completed,
            "ingested": self.ingested,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "completed_date": self.completed_date.isoformat() if self.completed_date else None,
            "message": self.message,
        }


class HistoricalBackfill:
    """Initial population and arbitrary range syncs.

    Shares the reconciliation engine's in-flight guard, so a backfill and a
    reconciliation never run at the same time.
    """

    def __init__(
        self,
        archive: PriceArchive,
        state: StateManager,
        client: PriceClient,
        engine: ReconciliationEngine,
        calendar: MarketCalendar,
        config: SyncConfig,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._archive = archive
        self._state = state
        self._client = client
        self._engine = engine
        self._calendar = calendar
        self._config = config
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._stop_event = threading.Event()

    def request_stop(self) -> None:
        """Stop a running backfill before its next chunk. Not reversible."""
        self._stop_event.set()

    def _stopped(self, kind: RunKind, started: datetime, stop: BackfillStopped) -> BackfillResult:
        message = str(stop)
        logger.info("%s: %s", kind, message)
        result = BackfillResult(
            ReconcileStatus.SKIPPED,
            kind,
            chunks_total=stop.total,
            chunks_completed=stop.completed,
            records_processed=stop.totals.records_processed,
            records_created=stop.totals.records_created,
            records_updated=stop.totals.records_updated,
            message=message,
        )
        self._log(kind, RunStatus.SKIPPED, started, result=result, details=message)
        return result

    def run(self, now: datetime | None = None, force: bool = False) -> BackfillResult:
        """Run the initial backfill, resuming after the last completed chunk.

        Args:
            now: Reference instant. Defaults to the clock.
            force: Run even when the initial sync is already marked complete.

        Raises:
            Whatever the client or store raised. Completed chunks stay
            committed and recorded.
        """
        kind = RunKind.INITIAL
        if not force and self._state.get_initial_sync_status().is_complete:
            return BackfillResult(
                ReconcileStatus.UP_TO_DATE, kind, message="Initial sync already complete"
            )

        started = self._clock.now()
        with self._engine.exclusive() as acquired:
            if not acquired:
                self._log(kind, RunStatus.SKIPPED, started, details=BUSY_MESSAGE)
                return BackfillResult(ReconcileStatus.SKIPPED, kind, message=BUSY_MESSAGE)
            try:
                result = self._run_initial(now or started)
            except BackfillStopped as stop:
                return self._stopped(kind, started, stop)
            except Exception as e:
                logger.error("Initial sync aborted: %s", e)
                self._log(kind, RunStatus.ERROR, started, error=f"{type(e).__name__}: {e}")
                raise

        self._log(kind, RunStatus.SUCCESS, started, result=result, details=result.message)
        return result

    def sync_range(
        self,
        start: date,
        end: date,
        entities: Iterable[str] | None = None,
    ) -> BackfillResult:
        """Fetch and ingest ``[start, end]`` regardless of watermarks.

        Raises:
            ValueError: If ``start`` is after ``end`` or an entity is unknown.
        """
        if start > end:
            raise ValueError(f"start_date {start} is after end_date {end}")
        selected = self._engine.select_entities(entities)
        kind = RunKind.HISTORICAL
        started = self._clock.now()

        if (end - start).days + 1 > RANGE_CHUNK_THRESHOLD_DAYS:
            chunks = split_half_year_chunks(start, end)
        else:
            chunks = [DateChunk(start, end)]

        with self._engine.exclusive() as acquired:
            if not acquired:
                self._log(kind, RunStatus.SKIPPED, started, details=BUSY_MESSAGE)
                return BackfillResult(ReconcileStatus.SKIPPED, kind, message=BUSY_MESSAGE)
            try:
                totals = self._fetch_chunks(chunks, selected)
            except BackfillStopped as stop:
                return self._stopped(kind, started, stop)
            except Exception as e:
                logger.error("Historical sync %s..%s failed: %s", start, end, e)
                self._log(kind, RunStatus.ERROR, started, error=f"{type(e).__name__}: {e}")
                raise

        result = BackfillResult(
            ReconcileStatus.SUCCESS,
            kind,
            start_date=start,
            end_date=end,
            chunks_total=len(chunks),
            chunks_completed=len(chunks),
            records_processed=totals.records_processed,
            records_created=totals.records_created,
            records_updated=totals.records_updated,
            message=f"Historical sync {start}..{end}: {totals.ingested} records ingested",
        )
        self._log(kind, RunStatus.SUCCESS, started, result=result, details=result.message)
        return result

    def _run_initial(self, now: datetime) -> BackfillResult:
        end = self._calendar.local_date(now) + timedelta(days=self._config.horizon_days)
        start = self._config.earliest_date
        progress = self._state.get_chunk_progress()
        if progress is not None:
            start = progress.last_completed_chunk_end + timedelta(days=1)
            logger.info("Resuming initial sync after chunk ending %s", progress.last_completed_chunk_end)

        chunks = split_half_year_chunks(start, end)
        logger.info("Initial sync %s..%s in %d chunks", start, end, len(chunks))
        totals = self._fetch_chunks(chunks, self._config.entities, record_progress=True)

        # Mark with the newest date actually stored, not the nominal end
        max_ts = self._archive.max_timestamp(self._config.entities)
        completed_date = self._calendar.local_date(max_ts) if max_ts is not None else None
        self._state.mark_initial_sync_complete(
            completed_date, totals.records_processed, completed_at=self._clock.now()
        )
        self._state.clear_chunk_progress()
        self._engine.update_watermarks(self._config.entities, now)
        logger.info("Initial sync complete through %s", completed_date)

        return BackfillResult(
            ReconcileStatus.SUCCESS,
            RunKind.INITIAL,
            start_date=start,
            end_date=end,
            chunks_total=len(chunks),
            chunks_completed=len(chunks),
            records_processed=totals.records_processed,
            records_created=totals.records_created,
            records_updated=totals.records_updated,
            completed_date=completed_date,
            message=f"Initial sync complete through {completed_date}",
        )

    def _fetch_chunks(
        self,
        chunks: Sequence[DateChunk],
        entities: Sequence[str],
        record_progress: bool = False,
    ) -> IngestResult:
        totals = IngestResult()
        for i, chunk in enumerate(chunks):
            if i > 0:
                self._sleep(self._config.chunk_delay)
            if self._stop_event.is_set():
                raise BackfillStopped(i, len(chunks), totals)
            batch = self._client.fetch_range(chunk.start, chunk.end, entities)
            ingest = ingest_batch(self._archive, batch, entities)
            if record_progress:
                self._state.set_chunk_progress(chunk.end, ingest.records_processed)
            totals.merge(ingest)
            logger.info(
                "Chunk %d/%d (%s..%s): %d records",
                i + 1,
                len(chunks),
                chunk.start,
                chunk.end,
                ingest.records_processed,
            )
        return totals

    def _log(
        self,
        kind: RunKind,
        status: RunStatus,
        started: datetime,
        result: BackfillResult | None = None,
        error: str | None = None,
        details: str | None = None,
    ) -> None:
        self._state.log_run(
            SyncRun(
                kind=kind,
                status=status,
                started_at=started,
                completed_at=self._clock.now(),
                records_processed=result.records_processed if result else 0,
                records_created=result.records_created if result else 0,
                records_updated=result.records_updated if result else 0,
                error_message=error,
                details=details,
            )
        )

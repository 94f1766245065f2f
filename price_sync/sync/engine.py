"""Reconciliation engine.

Brings the local store into agreement with the provider for a set of
entities:

1. Read each entity's watermark and decide where its sync starts
   (day after a trustworthy watermark, day before an untrustworthy one).
2. Ask the provider how far it has published, starting from the earliest
   candidate start and short-circuiting once local data is at parity.
3. Fetch the union range once for all entities needing sync and ingest it
   in one transaction.
4. Walk back from the newest stored date to the most recent complete date
   and move the watermarks there.

Only one reconciliation runs at a time. A call that finds the engine busy
is dropped with a ``skipped`` result instead of being queued.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from price_sync.clock import SystemClock
from price_sync.data.ingest import ingest_batch
from price_sync.errors import RetryConfig, retry_with_backoff
from price_sync.models import IngestResult, RunKind, RunStatus, SyncRun

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

    from price_sync.clock import Clock
    from price_sync.config import SyncConfig
    from price_sync.data.archive import PriceArchive
    from price_sync.data.client import PriceClient
    from price_sync.db.state_manager import StateManager
    from price_sync.market_calendar import MarketCalendar
    from price_sync.models import SyncWatermark
    from price_sync.sync.completeness import CompletenessOracle

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Another sync is already running"


class ReconcileStatus(StrEnum):
    """Outcome of one reconciliation."""

    SUCCESS = "success"
    UP_TO_DATE = "up_to_date"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ReconcileResult:
    """What a reconciliation did."""

    status: ReconcileStatus
    kind: RunKind
    entities: tuple[str, ...] = ()
    start_date: date | None = None
    end_date: date | None = None
    fetched: bool = False
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    complete_date: date | None = None
    message: str | None = None
    per_entity: dict[str, int] = field(default_factory=dict)

    @property
    def ingested(self) -> int:
        return self.records_created + self.records_updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "kind": str(self.kind),
            "entities": list(self.entities),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "fetched": self.fetched,
            "ingested": self.ingested,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "complete_date": self.complete_date.isoformat() if self.complete_date else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class _SyncPlan:
    starts: dict[str, date]
    trustworthy: dict[str, bool]
    horizon: date

    @property
    def entities(self) -> tuple[str, ...]:
        return tuple(self.starts)

    @property
    def union_start(self) -> date:
        return min(self.starts.values())


class ReconciliationEngine:
    """Fetch-decide-ingest-update cycle behind a single in-flight guard."""

    def __init__(
        self,
        archive: PriceArchive,
        state: StateManager,
        client: PriceClient,
        oracle: CompletenessOracle,
        calendar: MarketCalendar,
        config: SyncConfig,
        clock: Clock | None = None,
    ) -> None:
        self._archive = archive
        self._state = state
        self._client = client
        self._oracle = oracle
        self._calendar = calendar
        self._config = config
        self._clock = clock or SystemClock()
        self._guard = threading.Lock()

    @property
    def entities(self) -> tuple[str, ...]:
        return self._config.entities

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    @contextmanager
    def exclusive(self) -> Iterator[bool]:
        """Try to take the in-flight guard without blocking.

        Yields:
            True if the guard was acquired; the caller must skip its work otherwise.
        """
        acquired = self._guard.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._guard.release()

    def horizon(self, now: datetime) -> date:
        """Date at which a trustworthy watermark needs no further sync."""
        return self._calendar.local_date(now) + timedelta(days=self._config.horizon_days)

    # --- Entry points ---

    def reconcile(
        self,
        entities: Iterable[str] | None = None,
        now: datetime | None = None,
        kind: RunKind = RunKind.MANUAL,
    ) -> ReconcileResult:
        """Run one reconciliation for ``entities`` (all tracked if None).

        Returns a ``skipped`` result without touching anything when another
        reconciliation is in flight.

        Raises:
            Whatever the client, ingestion or store raised. An ``error`` run
            record is written first.
        """
        selected = self.select_entities(entities)
        started = self._clock.now()
        with self.exclusive() as acquired:
            if not acquired:
                logger.info("%s skipped: %s", kind, BUSY_MESSAGE)
                self._log(kind, RunStatus.SKIPPED, started, details=BUSY_MESSAGE)
                return ReconcileResult(
                    ReconcileStatus.SKIPPED, kind, entities=selected, message=BUSY_MESSAGE
                )
            try:
                result = self._reconcile(selected, now or started, kind)
            except Exception as e:
                logger.error("%s failed: %s", kind, e)
                self._log(kind, RunStatus.ERROR, started, error=f"{type(e).__name__}: {e}")
                raise

        self._log(
            kind,
            RunStatus.SUCCESS,
            started,
            ingest=IngestResult(
                result.records_processed, result.records_created, result.records_updated
            ),
            details=result.message,
        )
        return result

    def trigger(
        self,
        entities: Iterable[str] | None = None,
        retry: RetryConfig | None = None,
        kind: RunKind = RunKind.MANUAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ReconcileResult:
        """Reconcile with retries on transient upstream errors.

        Failures left after the retries are returned as an ``error`` result.

        Raises:
            ValueError: If ``entities`` names an untracked entity.
        """
        selected = self.select_entities(entities)
        try:
            return retry_with_backoff(
                lambda: self.reconcile(selected, kind=kind),
                retry or RetryConfig(),
                operation=str(kind),
                sleep=sleep,
            )
        except Exception as e:
            return ReconcileResult(
                ReconcileStatus.ERROR, kind, entities=selected, message=str(e)
            )

    # --- Watermarks ---

    def seed_watermarks(self, now: datetime, entities: Iterable[str] | None = None) -> None:
        """Create watermarks for entities that have none.

        Seeds from the newest complete date within the lookback of the latest
        stored slot, or untrustworthy at the latest stored date when none is
        complete, or untrustworthy at the provider's earliest date without data.
        Does not take the in-flight guard.
        """
        horizon = self.horizon(now)
        for entity in self.select_entities(entities):
            if self._state.get_watermark(entity) is not None:
                continue
            latest = self._archive.latest_timestamp(entity)
            if latest is None:
                self._state.initialize_watermark(entity, self._config.earliest_date, None, False)
                logger.info("%s: no local data, watermark seeded at earliest date", entity)
                continue

            latest_date = min(self._calendar.local_date(latest), horizon)
            found = self._oracle.latest_complete_date(
                latest_date, self._config.lookback_days, [entity]
            )
            if found is not None:
                self._state.initialize_watermark(
                    entity, found, self._last_timestamp_on(entity, found), True
                )
                logger.info("%s: watermark seeded at %s", entity, found)
            else:
                self._state.initialize_watermark(entity, latest_date, latest, False)
                logger.info("%s: no complete date near %s, watermark untrustworthy", entity, latest_date)

    def update_watermarks(
        self, entities: Sequence[str], now: datetime
    ) -> date | None:
        """Move watermarks to the most recent complete date in the store.

        A trustworthy watermark is never moved backwards. Returns the complete
        date that was found, if any.
        """
        max_ts = self._archive.max_timestamp(entities)
        if max_ts is None:
            return None
        horizon = self.horizon(now)
        newest = min(self._calendar.local_date(max_ts), horizon)
        found = self._oracle.latest_complete_date(newest, self._config.lookback_days, entities)

        for entity in entities:
            previous = self._state.get_watermark(entity)
            if found is None:
                best = previous.last_complete_date if previous else newest
                self._state.set_watermark(
                    entity,
                    best,
                    previous.last_complete_timestamp if previous else max_ts,
                    False,
                    synced_at=now,
                )
                logger.warning("%s: no complete date found, watermark %s untrustworthy", entity, best)
            elif previous is not None and previous.trustworthy and previous.last_complete_date > found:
                logger.warning(
                    "%s: complete date %s is behind watermark %s, keeping watermark",
                    entity,
                    found,
                    previous.last_complete_date,
                )
                self._state.set_watermark(
                    entity,
                    previous.last_complete_date,
                    previous.last_complete_timestamp,
                    True,
                    synced_at=now,
                )
            else:
                self._state.set_watermark(
                    entity, found, self._last_timestamp_on(entity, found), True, synced_at=now
                )
        return found

    def select_entities(self, entities: Iterable[str] | None) -> tuple[str, ...]:
        """Normalize an entity selection; None or empty means all tracked entities."""
        if entities is None:
            return self._config.entities
        selected = tuple(e.lower() for e in entities)
        unknown = [e for e in selected if e not in self._config.entities]
        if unknown:
            raise ValueError(f"Unknown entities: {', '.join(unknown)}")
        return selected or self._config.entities

    # --- Internals ---

    def _last_timestamp_on(self, entity: str, day: date) -> int | None:
        _, end_ts = self._calendar.day_bounds_ts(day)
        return self._archive.latest_timestamp(entity, before=end_ts)

    def _plan(self, entities: Sequence[str], now: datetime) -> _SyncPlan:
        horizon = self.horizon(now)
        earliest = self._config.earliest_date
        starts: dict[str, date] = {}
        trustworthy: dict[str, bool] = {}
        for entity in entities:
            watermark: SyncWatermark | None = self._state.get_watermark(entity)
            if watermark is None:
                starts[entity] = earliest
                trustworthy[entity] = False
                continue
            if watermark.trustworthy and watermark.last_complete_date >= horizon:
                continue
            if watermark.trustworthy:
                start = watermark.last_complete_date + timedelta(days=1)
            else:
                start = watermark.last_complete_date - timedelta(days=1)
            starts[entity] = max(start, earliest)
            trustworthy[entity] = watermark.trustworthy
        return _SyncPlan(starts=starts, trustworthy=trustworthy, horizon=horizon)

    def _reconcile(
        self, entities: tuple[str, ...], now: datetime, kind: RunKind
    ) -> ReconcileResult:
        self.seed_watermarks(now, entities)
        plan = self._plan(entities, now)
        if not plan.starts:
            logger.info("%s: all entities synced through %s", kind, plan.horizon)
            return ReconcileResult(
                ReconcileStatus.UP_TO_DATE,
                kind,
                entities=entities,
                message=f"All entities synced through {plan.horizon}",
            )

        needing = plan.entities
        union_start = plan.union_start
        local_latest = {e: self._archive.latest_timestamp(e) for e in needing}
        provider_latest = self._client.latest_available_date_all(
            needing, union_start, self._config.lookahead_days, local_latest
        )

        if provider_latest is None:
            # Parity with the provider: only re-verify what we do not trust
            target_end = plan.horizon
            should_fetch = not all(plan.trustworthy.values())
        else:
            target_end = min(provider_latest, plan.horizon)
            should_fetch = target_end >= union_start

        if should_fetch and provider_latest is None:
            today = self._calendar.local_date(now)
            tomorrow = today + timedelta(days=1)
            if (
                self._oracle.is_date_complete(today, needing).is_complete
                and not self._oracle.is_date_complete(tomorrow, needing).is_complete
            ):
                logger.info("%s: today complete, provider has nothing beyond local data", kind)
                should_fetch = False

        result = ReconcileResult(
            ReconcileStatus.SUCCESS,
            kind,
            entities=needing,
            start_date=union_start,
            end_date=target_end,
        )
        if should_fetch:
            logger.info(
                "%s: syncing %s from %s to %s", kind, ",".join(needing), union_start, target_end
            )
            batch = self._client.fetch_range(union_start, target_end, needing)
            ingest = ingest_batch(self._archive, batch, needing)
            result.fetched = True
            result.records_processed = ingest.records_processed
            result.records_created = ingest.records_created
            result.records_updated = ingest.records_updated
            result.per_entity = dict(ingest.per_entity)
        else:
            logger.info("%s: provider has no newer data, skipping fetch", kind)

        result.complete_date = self.update_watermarks(needing, now)
        result.message = (
            f"Synced {union_start}..{target_end}: {result.ingested} records ingested"
            if result.fetched
            else "No new data from provider"
        )
        return result

    def _log(
        self,
        kind: RunKind,
        status: RunStatus,
        started: datetime,
        ingest: IngestResult | None = None,
        error: str | None = None,
        details: str | None = None,
    ) -> None:
        ingest = ingest or IngestResult()
        self._state.log_run(
            SyncRun(
                kind=kind,
                status=status,
                started_at=started,
                completed_at=self._clock.now(),
                records_processed=ingest.records_processed,
                records_created=ingest.records_created,
                records_updated=ingest.records_updated,
                error_message=error,
                details=details,
            )
        )

"""SQLite store for day-ahead price records."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from price_sync.db.connection import Database
from price_sync.market_calendar import MarketCalendar
from price_sync.models import IngestResult, PriceRecord

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

_UPSERT_SQL = """
INSERT INTO price_data (entity, timestamp, price, local_date)
VALUES (?, ?, ?, ?)
ON CONFLICT(entity, timestamp) DO UPDATE SET
    price = excluded.price,
    local_date = excluded.local_date,
    updated_at = datetime('now')
WHERE price_data.price IS NOT excluded.price
   OR price_data.local_date IS NOT excluded.local_date
"""


class PriceArchive:
    """Price time series keyed by (entity, time-slot start).

    At most one row exists per key; re-ingesting a slot overwrites its price
    and leaves identical rows untouched.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        calendar: MarketCalendar | None = None,
        database: Database | None = None,
    ) -> None:
        """Initialize archive.

        Args:
            db_path: Path to database. Uses default if not specified.
            calendar: Calendar used to stamp each row with its local date.
            database: Shared database handle; ``db_path`` is ignored when given.
        """
        self._owns_db = database is None
        self._db = database or Database(db_path)
        self._calendar = calendar or MarketCalendar()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._db.conn

    @property
    def _lock(self) -> threading.RLock:
        return self._db.lock

    @property
    def calendar(self) -> MarketCalendar:
        return self._calendar

    def close(self) -> None:
        """Close the database unless it is shared."""
        if self._owns_db:
            self._db.close()

    def upsert_prices(self, records: Sequence[PriceRecord]) -> IngestResult:
        """Insert or update records in a single transaction.

        Either every record is written or, on any error, none is.

        Args:
            records: Records for any number of entities.

        Returns:
            IngestResult with created/updated counts.

        Raises:
            sqlite3.Error: If the write fails; the transaction is rolled back.
            ValueError, OverflowError: If a timestamp cannot be mapped to a
                local date; nothing is written.
        """
        result = IngestResult(records_processed=len(records))
        if not records:
            return result

        # Rows for every entity are built before the first write
        by_entity: dict[str, list[tuple[str, int, float, str]]] = defaultdict(list)
        for r in records:
            by_entity[r.entity].append(
                (r.entity, r.timestamp, r.price, self._calendar.local_date(r.timestamp).isoformat())
            )

        try:
            with self._db.transaction() as conn:
                for entity, rows in by_entity.items():
                    lo = min(row[1] for row in rows)
                    hi = max(row[1] for row in rows)
                    before = self._count(entity, lo, hi + 1)
                    changes_before = conn.total_changes
                    conn.executemany(_UPSERT_SQL, rows)
                    changed = conn.total_changes - changes_before
                    created = self._count(entity, lo, hi + 1) - before
                    result.records_created += created
                    result.records_updated += changed - created
                    result.per_entity[entity] = len(rows)
        except Exception:
            logger.exception("Price upsert failed, rolled back %d records", len(records))
            raise
        return result

    def _count(self, entity: str, start_ts: int, end_ts: int) -> int:
        row = self.conn.execute(
            """SELECT COUNT(*) FROM price_data
               WHERE entity = ? AND timestamp >= ? AND timestamp < ?""",
            (entity, start_ts, end_ts),
        ).fetchone()
        return int(row[0]) if row else 0

    def count_in_range(self, entity: str, start_ts: int, end_ts: int) -> int:
        """Number of records for ``entity`` with ``start_ts <= timestamp < end_ts``."""
        with self._lock:
            return self._count(entity, start_ts, end_ts)

    def timestamps_in_range(
        self, entity: str, start_ts: int, end_ts: int, limit: int | None = None
    ) -> list[int]:
        """Ordered slot starts for ``entity`` in ``[start_ts, end_ts)``."""
        query = """SELECT timestamp FROM price_data
                   WHERE entity = ? AND timestamp >= ? AND timestamp < ?
                   ORDER BY timestamp"""
        params: list[Any] = [entity, start_ts, end_ts]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            return [row[0] for row in self.conn.execute(query, params)]

    def latest_timestamp(self, entity: str, before: int | None = None) -> int | None:
        """Latest stored slot start for an entity, optionally strictly before ``before``."""
        query = "SELECT MAX(timestamp) FROM price_data WHERE entity = ?"
        params: list[Any] = [entity]
        if before is not None:
            query += " AND timestamp < ?"
            params.append(before)
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return row[0] if row and row[0] is not None else None

    def max_timestamp(self, entities: Iterable[str] | None = None) -> int | None:
        """Latest stored slot start across ``entities`` (all if None)."""
        query = "SELECT MAX(timestamp) FROM price_data"
        params: list[Any] = []
        if entities is not None:
            entity_list = list(entities)
            if not entity_list:
                return None
            query += f" WHERE entity IN ({','.join('?' * len(entity_list))})"
            params = entity_list
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return row[0] if row and row[0] is not None else None

    def get_prices(
        self,
        entity: str,
        start_ts: int | None = None,
        end_ts: int | None = None,
    ) -> list[PriceRecord]:
        """Get records for an entity ordered by time.

        Args:
            entity: Entity code.
            start_ts: Start timestamp, inclusive.
            end_ts: End timestamp, exclusive.
        """
        query = "SELECT entity, timestamp, price FROM price_data WHERE entity = ?"
        params: list[Any] = [entity]
        if start_ts is not None:
            query += " AND timestamp >= ?"
            params.append(start_ts)
        if end_ts is not None:
            query += " AND timestamp < ?"
            params.append(end_ts)
        query += " ORDER BY timestamp"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [PriceRecord(row["entity"], row["timestamp"], row["price"]) for row in rows]

    def entity_summary(self) -> list[dict[str, Any]]:
        """Record count and first/last slot per entity."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT entity, COUNT(*) AS records,
                          MIN(timestamp) AS first_timestamp,
                          MAX(timestamp) AS last_timestamp
                   FROM price_data GROUP BY entity ORDER BY entity"""
            ).fetchall()
        return [dict(row) for row in rows]

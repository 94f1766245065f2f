"""StateManager providing sync state persistence.

Holds the per-entity sync watermarks, the append-only run log, and the
settings used by the bulk backfill (chunk progress, initial sync flag).
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from price_sync.db.connection import Database
from price_sync.models import (
    ChunkProgress,
    InitialSyncStatus,
    RunKind,
    RunStatus,
    SyncRun,
    SyncWatermark,
)

if TYPE_CHECKING:
    import sqlite3
    import threading
    from collections.abc import Iterable
    from pathlib import Path

JsonDict = dict[str, Any]

SETTING_INITIAL_SYNC = "initial_sync_completed"
SETTING_LAST_CHUNK = "initial_sync_last_chunk"


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    """Parse stored timestamps, treating naive SQLite defaults as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _row_to_watermark(row: sqlite3.Row) -> SyncWatermark:
    return SyncWatermark(
        entity=row["entity"],
        last_complete_date=date.fromisoformat(row["last_complete_date"]),
        last_complete_timestamp=row["last_complete_timestamp"],
        trustworthy=bool(row["trustworthy"]),
        last_sync_at=_parse_dt(row["last_sync_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> SyncRun:
    started = _parse_dt(row["started_at"])
    if started is None:
        raise ValueError(f"Run {row['id']} has no start time")
    return SyncRun(
        id=row["id"],
        kind=RunKind(row["kind"]),
        status=RunStatus(row["status"]),
        started_at=started,
        completed_at=_parse_dt(row["completed_at"]),
        records_processed=row["records_processed"] or 0,
        records_created=row["records_created"] or 0,
        records_updated=row["records_updated"] or 0,
        error_message=row["error_message"],
        details=row["details"],
    )


class StateManager:
    """Manager for sync state in the SQLite database.

    Only the reconciliation engine mutates watermarks; any component may
    append to the run log.
    """

    def __init__(self, db_path: Path | None = None, database: Database | None = None) -> None:
        """Initialize StateManager.

        Args:
            db_path: Path to database file. Uses default if not specified.
            database: Shared database handle; ``db_path`` is ignored when given.
        """
        self._owns_db = database is None
        self._db = database or Database(db_path)

    @property
    def conn(self) -> sqlite3.Connection:
        return self._db.conn

    @property
    def _lock(self) -> threading.RLock:
        return self._db.lock

    def close(self) -> None:
        """Close the database unless it is shared."""
        if self._owns_db:
            self._db.close()

    # --- Watermarks ---

    def get_watermark(self, entity: str) -> SyncWatermark | None:
        """Get the watermark for an entity, or None if none exists yet."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sync_watermarks WHERE entity = ?", (entity,)
            ).fetchone()
        return _row_to_watermark(row) if row else None

    def list_watermarks(self) -> list[SyncWatermark]:
        """Get all watermarks ordered by entity."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM sync_watermarks ORDER BY entity"
            ).fetchall()
        return [_row_to_watermark(row) for row in rows]

    def set_watermark(
        self,
        entity: str,
        last_complete_date: date,
        last_complete_timestamp: int | None,
        trustworthy: bool,
        synced_at: datetime | None = None,
    ) -> None:
        """Create or replace the watermark for an entity."""
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO sync_watermarks
                   (entity, last_complete_date, last_complete_timestamp, trustworthy,
                    last_sync_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, datetime('now'))
                   ON CONFLICT(entity) DO UPDATE SET
                       last_complete_date = excluded.last_complete_date,
                       last_complete_timestamp = excluded.last_complete_timestamp,
                       trustworthy = excluded.trustworthy,
                       last_sync_at = COALESCE(excluded.last_sync_at, last_sync_at),
                       updated_at = datetime('now')""",
                (
                    entity,
                    last_complete_date.isoformat(),
                    last_complete_timestamp,
                    int(trustworthy),
                    _to_iso(synced_at),
                ),
            )

    def initialize_watermark(
        self,
        entity: str,
        last_complete_date: date,
        last_complete_timestamp: int | None,
        trustworthy: bool,
    ) -> bool:
        """Create the watermark only if the entity has none.

        Returns:
            True if a watermark was created.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO sync_watermarks
                   (entity, last_complete_date, last_complete_timestamp, trustworthy)
                   VALUES (?, ?, ?, ?)""",
                (entity, last_complete_date.isoformat(), last_complete_timestamp, int(trustworthy)),
            )
        return cursor.rowcount > 0

    # --- Run log ---

    def log_run(self, run: SyncRun) -> int:
        """Append a finished run to the run log.

        Returns:
            ID of the created entry.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO sync_runs
                   (kind, status, records_processed, records_created, records_updated,
                    error_message, details, started_at, completed_at, duration_ms)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(run.kind),
                    str(run.status),
                    run.records_processed,
                    run.records_created,
                    run.records_updated,
                    run.error_message,
                    run.details,
                    _to_iso(run.started_at),
                    _to_iso(run.completed_at),
                    run.duration_ms,
                ),
            )
        run.id = cursor.lastrowid or 0
        return run.id

    def list_runs(
        self,
        kind: RunKind | str | None = None,
        limit: int = 50,
    ) -> list[SyncRun]:
        """List recent runs, newest first."""
        with self._lock:
            if kind:
                rows = self.conn.execute(
                    "SELECT * FROM sync_runs WHERE kind = ? ORDER BY id DESC LIMIT ?",
                    (str(kind), limit),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        return [_row_to_run(row) for row in rows]

    def last_run_at(
        self,
        kinds: Iterable[RunKind],
        statuses: Iterable[RunStatus] = (RunStatus.SUCCESS,),
    ) -> datetime | None:
        """Completion time of the most recent run matching kinds and statuses."""
        kind_list = [str(k) for k in kinds]
        status_list = [str(s) for s in statuses]
        if not kind_list or not status_list:
            return None
        query = (
            "SELECT MAX(completed_at) FROM sync_runs "
            f"WHERE kind IN ({','.join('?' * len(kind_list))}) "
            f"AND status IN ({','.join('?' * len(status_list))})"
        )
        with self._lock:
            row = self.conn.execute(query, [*kind_list, *status_list]).fetchone()
        return _parse_dt(row[0]) if row else None

    # --- Settings ---

    def get_setting(self, key: str) -> Any:
        """Get a JSON setting value, or None."""
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def set_setting(self, key: str, value: Any) -> None:
        """Create or replace a JSON setting value."""
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO settings (key, value, updated_at)
                   VALUES (?, ?, datetime('now'))
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value, updated_at = datetime('now')""",
                (key, json.dumps(value)),
            )

    def delete_setting(self, key: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    # --- Backfill progress ---

    def get_chunk_progress(self) -> ChunkProgress | None:
        """Get the last completed backfill chunk, if any."""
        value = self.get_setting(SETTING_LAST_CHUNK)
        if not value:
            return None
        return ChunkProgress(
            last_completed_chunk_end=date.fromisoformat(value["end_date"]),
            records_in_chunk=int(value.get("records", 0)),
        )

    def set_chunk_progress(self, chunk_end: date, records: int) -> None:
        self.set_setting(
            SETTING_LAST_CHUNK,
            {"end_date": chunk_end.isoformat(), "records": records},
        )

    def clear_chunk_progress(self) -> None:
        self.delete_setting(SETTING_LAST_CHUNK)

    def mark_initial_sync_complete(
        self,
        completed_date: date | None,
        records_count: int,
        completed_at: datetime | None = None,
    ) -> None:
        """Set the initial sync flag.

        Args:
            completed_date: Latest date actually present in the store.
            records_count: Records ingested by the backfill.
            completed_at: Completion instant. Defaults to now.
        """
        self.set_setting(
            SETTING_INITIAL_SYNC,
            {
                "completed_date": completed_date.isoformat() if completed_date else None,
                "records": records_count,
                "completed_at": _to_iso(completed_at or datetime.now(UTC)),
            },
        )

    def get_initial_sync_status(self) -> InitialSyncStatus:
        value = self.get_setting(SETTING_INITIAL_SYNC)
        last_chunk = self.get_chunk_progress()
        if not value:
            return InitialSyncStatus(is_complete=False, last_chunk=last_chunk)
        completed_date = value.get("completed_date")
        return InitialSyncStatus(
            is_complete=True,
            completed_date=date.fromisoformat(completed_date) if completed_date else None,
            records_count=int(value.get("records", 0)),
            completed_at=_parse_dt(value.get("completed_at")),
            last_chunk=last_chunk,
        )

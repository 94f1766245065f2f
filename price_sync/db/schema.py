"""SQLite schema definitions for the price sync database."""

from __future__ import annotations

import contextlib
import sqlite3

SCHEMA_SQL = """
-- Day-ahead prices, one row per (entity, time-slot start)
CREATE TABLE IF NOT EXISTS price_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    price REAL NOT NULL,
    local_date TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(entity, timestamp)
);

-- Per-entity cursor: last fully complete date and whether it can be trusted
CREATE TABLE IF NOT EXISTS sync_watermarks (
    entity TEXT PRIMARY KEY,
    last_complete_date TEXT NOT NULL,
    last_complete_timestamp INTEGER,
    trustworthy BOOLEAN NOT NULL DEFAULT 0,
    last_sync_at TEXT,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Append-only run log
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    records_processed INTEGER DEFAULT 0,
    records_created INTEGER DEFAULT 0,
    records_updated INTEGER DEFAULT 0,
    error_message TEXT,
    details TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER
);

-- Key/value settings (backfill progress, initial sync flag)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value JSON NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_price_entity_time ON price_data(entity, timestamp);
CREATE INDEX IF NOT EXISTS idx_price_local_date ON price_data(local_date, entity);
CREATE INDEX IF NOT EXISTS idx_sync_runs_kind ON sync_runs(kind, status, completed_at);
"""


def _migrate_add_columns(conn: sqlite3.Connection) -> None:
    """Add columns that may be missing from older databases."""
    migrations = [
        ("sync_watermarks", "last_sync_at", "TEXT"),
        ("sync_runs", "duration_ms", "INTEGER"),
        ("sync_runs", "details", "TEXT"),
    ]
    for table, column, col_type in migrations:
        # duplicate column name
        with contextlib.suppress(sqlite3.OperationalError):
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")


def init_schema(conn: sqlite3.Connection) -> None:
    """Initialize database schema.

    Args:
        conn: SQLite connection with WAL mode enabled.
    """
    conn.executescript(SCHEMA_SQL)
    _migrate_add_columns(conn)
    conn.commit()

"""Shared SQLite database handle for the price archive and the sync state."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Final

from price_sync.db.schema import init_schema

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH: Final = Path("data/state/price_sync.db")
BUSY_TIMEOUT_MS: Final = 5000


class DatabaseClosedError(sqlite3.ProgrammingError):
    """Raised when a closed database is used again."""


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    """Open a WAL-mode connection usable from the scheduler and API threads.

    Args:
        db_path: Path to database file. Defaults to data/state/price_sync.db

    Returns:
        Configured SQLite connection with the schema in place.
    """
    db_path = db_path or DEFAULT_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
    init_schema(conn)
    return conn


class Database:
    """One connection and one lock shared by every store of a runtime.

    ``PriceArchive`` and ``StateManager`` built on the same ``Database`` never
    interleave statements, so a rolled-back price batch cannot swallow a
    run-log write and vice versa. Once closed, the handle stays closed.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._path = db_path or DEFAULT_DB_PATH
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self.lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def conn(self) -> sqlite3.Connection:
        """Open the connection on first use.

        Raises:
            DatabaseClosedError: If ``close`` was already called.
        """
        if self._closed:
            raise DatabaseClosedError(f"Database {self._path} is closed")
        if self._conn is None:
            with self.lock:
                if self._conn is None:
                    self._conn = get_connection(self._path)
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for a unit of work; commit it, or roll all of it back.

        Any exception, not only ``sqlite3.Error``, rolls back whatever the
        block wrote before it propagates.
        """
        with self.lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def close(self) -> None:
        with self.lock:
            self._closed = True
            if self._conn is not None:
                self._conn.close()
                self._conn = None

"""SQLite state database with WAL mode and StateManager."""

from price_sync.db.connection import Database, DatabaseClosedError, get_connection
from price_sync.db.state_manager import StateManager

__all__ = ["Database", "DatabaseClosedError", "get_connection", "StateManager"]

"""Completeness checks, reconciliation and historical backfill."""

from price_sync.sync.backfill import BackfillResult, HistoricalBackfill, split_half_year_chunks
from price_sync.sync.completeness import CompletenessOracle
from price_sync.sync.engine import ReconcileResult, ReconcileStatus, ReconciliationEngine

__all__ = [
    "BackfillResult",
    "CompletenessOracle",
    "HistoricalBackfill",
    "ReconcileResult",
    "ReconcileStatus",
    "ReconciliationEngine",
    "split_half_year_chunks",
]

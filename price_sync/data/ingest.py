"""Idempotent ingestion of fetched price batches."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from price_sync.data.archive import PriceArchive
    from price_sync.models import IngestResult, PriceRecord

logger = logging.getLogger(__name__)


def ingest_batch(
    archive: PriceArchive,
    batch: Mapping[str, list[PriceRecord]],
    entities: Iterable[str] | None = None,
) -> IngestResult:
    """Upsert a fetched batch in one all-or-nothing transaction.

    Args:
        archive: Target store.
        batch: Records keyed by entity, as returned by ``PriceClient.fetch_range``.
        entities: Restrict ingestion to these entities. All keys if None.

    Returns:
        IngestResult with per-entity record counts.
    """
    wanted = set(entities) if entities is not None else set(batch)
    records = [
        record
        for entity, items in batch.items()
        if entity in wanted
        for record in items
        if record.entity == entity
    ]
    result = archive.upsert_prices(records)
    for entity in sorted(wanted):
        logger.info(
            "Ingested %s: %d records received", entity.upper(), result.per_entity.get(entity, 0)
        )
    logger.info(
        "Batch committed: %d processed, %d created, %d updated",
        result.records_processed,
        result.records_created,
        result.records_updated,
    )
    return result

"""Price data: upstream client, local archive and ingestion."""

from price_sync.data.archive import PriceArchive
from price_sync.data.client import PriceClient, UpstreamError
from price_sync.data.ingest import ingest_batch

__all__ = ["PriceArchive", "PriceClient", "UpstreamError", "ingest_batch"]

"""Upstream client for the day-ahead price provider.

Wraps the provider's REST API: range queries returning prices for every
entity at once, and the per-entity ``/latest`` endpoint used to discover how
far the provider has published.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, date, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from price_sync.config import DEFAULT_API_URL, CompletenessBounds
from price_sync.market_calendar import MarketCalendar
from price_sync.models import PriceRecord

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_RANGE_DAYS = 365
# 2100-01-01T00:00:00Z; anything later is not a market timestamp
MAX_TIMESTAMP = 4_102_444_800

_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "price-sync/0.1",
}


class UpstreamError(Exception):
    """The provider answered with a payload we cannot interpret."""

    pass


def _format_utc(instant: Any) -> str:
    return instant.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_records(entity: str, items: Any) -> list[PriceRecord]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise UpstreamError(f"Expected a list of prices for {entity}, got {type(items).__name__}")
    records = []
    for item in items:
        try:
            record = PriceRecord(entity, int(item["timestamp"]), float(item["price"]))
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise UpstreamError(f"Malformed price item for {entity}: {item!r}") from e
        if not 0 <= record.timestamp < MAX_TIMESTAMP:
            raise UpstreamError(f"Timestamp out of range for {entity}: {item!r}")
        records.append(record)
    return records


def split_range(start: date, end: date, max_days: int = MAX_RANGE_DAYS) -> list[tuple[date, date]]:
    """Split ``[start, end]`` into consecutive inclusive pieces of at most ``max_days`` days."""
    pieces = []
    current = start
    while current <= end:
        piece_end = min(current + timedelta(days=max_days - 1), end)
        pieces.append((current, piece_end))
        current = piece_end + timedelta(days=1)
    return pieces


class PriceClient:
    """HTTP client for the price provider.

    Uses one ``httpx.Client`` for connection reuse. Pass ``client`` to share
    an existing one (its lifetime is then the caller's responsibility).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        calendar: MarketCalendar | None = None,
        bounds: CompletenessBounds | None = None,
        client: httpx.Client | None = None,
        range_chunk_days: int = MAX_RANGE_DAYS,
        range_chunk_delay: float = 2.0,
        lookahead_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._calendar = calendar or MarketCalendar()
        self._bounds = bounds or CompletenessBounds()
        self._own_client = client is None
        self._client = client or httpx.Client(timeout=timeout, headers=_HEADERS)
        self._range_chunk_days = range_chunk_days
        self._range_chunk_delay = range_chunk_delay
        self._lookahead_delay = lookahead_delay
        self._sleep = sleep

    def close(self) -> None:
        if self._own_client:
            self._client.close()

    def __enter__(self) -> PriceClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- Range queries ---

    def range_params(self, start: date, end: date) -> dict[str, str]:
        """Query parameters covering local days ``start`` through ``end``."""
        first, last = self._calendar.range_bounds(start, end)
        return {"start": _format_utc(first), "end": _format_utc(last)}

    def _fetch_window(
        self, start: date, end: date, entities: Sequence[str]
    ) -> dict[str, list[PriceRecord]]:
        params = self.range_params(start, end)
        logger.info("Fetching prices %s..%s (%s)", params["start"], params["end"], ",".join(entities))
        response = self._client.get(self._base_url, params=params)
        response.raise_for_status()

        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise UpstreamError("Price response has no 'data' mapping")

        result: dict[str, list[PriceRecord]] = {}
        for entity in entities:
            result[entity] = _parse_records(entity, data.get(entity))
        return result

    def fetch_range(
        self, start: date, end: date, entities: Sequence[str]
    ) -> dict[str, list[PriceRecord]]:
        """Fetch prices for local days ``start`` through ``end`` for all ``entities``.

        One request serves every entity. Ranges longer than the provider
        limit are split into consecutive requests with a pause in between.

        Raises:
            httpx.HTTPError: On transport or HTTP status failures.
            UpstreamError: On malformed payloads.
        """
        if end < start:
            return {entity: [] for entity in entities}

        pieces = split_range(start, end, self._range_chunk_days)
        if len(pieces) > 1:
            logger.info("Large range %s..%s split into %d requests", start, end, len(pieces))

        merged: dict[str, list[PriceRecord]] = {entity: [] for entity in entities}
        for i, (piece_start, piece_end) in enumerate(pieces):
            if i > 0:
                self._sleep(self._range_chunk_delay)
            for entity, records in self._fetch_window(piece_start, piece_end, entities).items():
                merged[entity].extend(records)
        return merged

    def fetch_day(self, day: date, entities: Sequence[str]) -> dict[str, list[PriceRecord]]:
        return self._fetch_window(day, day, entities)

    # --- Latest available data ---

    def fetch_latest(self, entity: str) -> PriceRecord | None:
        """Latest record the provider has published for an entity.

        Returns:
            The record, or None if the provider reports no data.

        Raises:
            httpx.HTTPError: On transport or HTTP status failures.
            UpstreamError: On malformed payloads.
        """
        response = self._client.get(f"{self._base_url}/{entity.upper()}/latest")
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError(f"Latest price response for {entity} is not JSON") from e

        if not isinstance(payload, dict) or not payload.get("success"):
            return None
        records = _parse_records(entity, payload.get("data"))
        if not records:
            return None
        return max(records, key=lambda r: r.timestamp)

    def latest_record(self, entity: str) -> PriceRecord | None:
        """Like ``fetch_latest`` but logs failures and returns None instead."""
        try:
            return self.fetch_latest(entity)
        except (httpx.HTTPError, UpstreamError) as e:
            logger.warning("Latest price lookup failed for %s: %s", entity, e)
            return None

    def latest_available_date(
        self,
        entity: str,
        search_from: date,
        max_days_ahead: int = 7,
        local_latest: int | None = None,
    ) -> date | None:
        """Latest date the provider has published for ``entity``.

        Args:
            entity: Entity code.
            search_from: First date of interest.
            max_days_ahead: Days scanned beyond ``search_from`` when ``/latest``
                does not answer the question.
            local_latest: Latest slot start already stored locally.

        Returns:
            The latest published date, or None when the provider holds nothing
            newer than ``local_latest`` or nothing from ``search_from`` on.
        """
        latest = self.latest_record(entity)
        if latest is not None:
            if local_latest is not None and latest.timestamp <= local_latest:
                logger.info("%s: provider latest is not newer than local data", entity)
                return None
            latest_date = self._calendar.local_date(latest.timestamp)
            if latest_date >= search_from:
                return latest_date

        found: date | None = None
        for offset in range(max_days_ahead + 1):
            if offset > 0:
                self._sleep(self._lookahead_delay)
            day = search_from + timedelta(days=offset)
            try:
                records = self.fetch_day(day, [entity]).get(entity, [])
            except (httpx.HTTPError, UpstreamError) as e:
                logger.warning("%s: lookup for %s failed: %s", entity, day, e)
                break
            if not records:
                break
            if self._bounds.looks_published(len(records)):
                found = day
                continue
            # Partially published day ends the scan
            if found is None:
                found = day
            break
        return found

    def latest_available_date_all(
        self,
        entities: Iterable[str],
        search_from: date,
        max_days_ahead: int = 7,
        local_latest: Mapping[str, int | None] | None = None,
    ) -> date | None:
        """Maximum of ``latest_available_date`` across entities."""
        local_latest = local_latest or {}
        best: date | None = None
        for entity in entities:
            found = self.latest_available_date(
                entity, search_from, max_days_ahead, local_latest.get(entity)
            )
            if found is not None and (best is None or found > best):
                best = found
        return best

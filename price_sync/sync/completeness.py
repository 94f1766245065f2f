"""Completeness oracle: is a local calendar date fully present in the store?

Prices arrive at 60-minute or 15-minute resolution and the width is not
stored. A day with at least ``quarter_hour_threshold`` records is taken to be
15-minute data (92..100 records cover 23h, 24h and 25h days). Below that the
slot width is inferred from the modal gap between the first stored instants
of the day; anything other than a clean 15-minute gap falls back to 60-minute
expectations (23..25 records). Too many records is as incomplete as too few.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING

from price_sync.config import CompletenessBounds
from price_sync.models import DateCompleteness, EntityCompleteness

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import date

    from price_sync.data.archive import PriceArchive
    from price_sync.market_calendar import MarketCalendar

logger = logging.getLogger(__name__)

QUARTER_HOUR_SECONDS = 900


def modal_gap(timestamps: Sequence[int]) -> int | None:
    """Most common gap between consecutive instants, or None with fewer than two."""
    gaps = [b - a for a, b in zip(timestamps, timestamps[1:], strict=False) if b > a]
    if not gaps:
        return None
    return Counter(gaps).most_common(1)[0][0]


class CompletenessOracle:
    """Decides whether stored data for a date is complete."""

    def __init__(
        self,
        archive: PriceArchive,
        calendar: MarketCalendar,
        entities: Iterable[str],
        bounds: CompletenessBounds | None = None,
    ) -> None:
        self._archive = archive
        self._calendar = calendar
        self._entities = tuple(entities)
        self._bounds = bounds or CompletenessBounds()

    @property
    def entities(self) -> tuple[str, ...]:
        return self._entities

    def expected_bounds(self, count: int, sample: Sequence[int]) -> tuple[int, int, int]:
        """Expected (min, max, interval minutes) for a day with ``count`` records."""
        b = self._bounds
        if count >= b.quarter_hour_threshold:
            return b.quarter_hour_min, b.quarter_hour_max, 15
        if count > 0 and modal_gap(sample) == QUARTER_HOUR_SECONDS:
            return b.quarter_hour_min, b.quarter_hour_max, 15
        return b.hourly_min, b.hourly_max, 60

    def check_entity(self, day: date, entity: str) -> EntityCompleteness:
        """Count and expected bounds for one entity on one date."""
        start_ts, end_ts = self._calendar.day_bounds_ts(day)
        count = self._archive.count_in_range(entity, start_ts, end_ts)
        sample: list[int] = []
        if 0 < count < self._bounds.quarter_hour_threshold:
            sample = self._archive.timestamps_in_range(
                entity, start_ts, end_ts, limit=self._bounds.sample_size
            )
        expected_min, expected_max, interval = self.expected_bounds(count, sample)
        return EntityCompleteness(
            entity=entity,
            count=count,
            expected_min=expected_min,
            expected_max=expected_max,
            interval_minutes=interval,
        )

    def is_date_complete(
        self, day: date, entities: Iterable[str] | None = None
    ) -> DateCompleteness:
        """Completeness of ``day`` across ``entities`` (all tracked if None).

        The date is complete only if every entity's count is within bounds.
        """
        selected = tuple(entities) if entities is not None else self._entities
        result = DateCompleteness(
            date=day,
            entities=tuple(self.check_entity(day, entity) for entity in selected),
        )
        logger.debug(
            "Completeness %s: %s complete=%s", day, result.per_entity_counts, result.is_complete
        )
        return result

    def latest_complete_date(
        self,
        start: date,
        lookback_days: int,
        entities: Iterable[str] | None = None,
    ) -> date | None:
        """Most recent complete date in ``[start - lookback_days + 1, start]``."""
        selected = tuple(entities) if entities is not None else self._entities
        for offset in range(lookback_days):
            day = start - timedelta(days=offset)
            if self.is_date_complete(day, selected).is_complete:
                return day
        return None

"""Clock abstraction so scheduling logic can run under a fake clock."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of wall-clock and process-local time."""

    def now(self) -> datetime:
        """Current wall-clock instant, timezone-aware UTC."""
        ...

    def monotonic(self) -> float:
        """Process-local seconds; does not advance while the host is suspended."""
        ...


class SystemClock:
    """Clock backed by the operating system."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

"""Configuration for the price sync engine.

Settings are frozen dataclasses with defaults matching the provider's
publication behaviour. Deployments override them from environment variables
(``SyncConfig.from_env``) or from a YAML file (``SyncConfig.from_file``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from datetime import date, time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from price_sync.db.connection import DEFAULT_DB_PATH

# Environment variable names
ENV_DB_PATH = "PRICE_SYNC_DB_PATH"
ENV_API_URL = "PRICE_SYNC_API_URL"
ENV_ENTITIES = "PRICE_SYNC_ENTITIES"
ENV_TIMEZONE = "PRICE_SYNC_TIMEZONE"
ENV_WINDOW_TIMEZONE = "PRICE_SYNC_WINDOW_TIMEZONE"
ENV_WINDOW_START = "PRICE_SYNC_WINDOW_START"
ENV_WINDOW_END = "PRICE_SYNC_WINDOW_END"
ENV_REQUEST_TIMEOUT = "PRICE_SYNC_REQUEST_TIMEOUT"
ENV_SCHEDULER_ENABLED = "PRICE_SYNC_SCHEDULER_ENABLED"

DEFAULT_API_URL = "https://dashboard.elering.ee/api/nps/price"
DEFAULT_ENTITIES = ("lt", "ee", "lv", "fi")
EARLIEST_AVAILABLE_DATE = date(2012, 7, 1)


class ConfigurationError(Exception):
    """Error in price sync configuration."""

    pass


@dataclass(frozen=True)
class CompletenessBounds:
    """Expected record counts for one local calendar day.

    Attributes:
        quarter_hour_threshold: Counts at or above this imply 15-minute slots.
        quarter_hour_min: Fewest 15-minute records for a complete (23h) day.
        quarter_hour_max: Most 15-minute records for a complete (25h) day.
        hourly_min: Fewest 60-minute records for a complete day.
        hourly_max: Most 60-minute records for a complete day.
        sample_size: Stored instants sampled to infer the slot width.
    """

    quarter_hour_threshold: int = 90
    quarter_hour_min: int = 92
    quarter_hour_max: int = 100
    hourly_min: int = 23
    hourly_max: int = 25
    sample_size: int = 10

    def looks_published(self, count: int) -> bool:
        """Whether a day with ``count`` records looks fully published upstream."""
        return count >= self.quarter_hour_threshold or self.hourly_min <= count <= self.hourly_max


@dataclass(frozen=True)
class WindowConfig:
    """Daily publication window of the provider."""

    timezone: str = "Europe/Paris"
    start: time = time(12, 45)
    end: time = time(15, 55)


@dataclass(frozen=True)
class SchedulerConfig:
    """Intervals and thresholds for the scheduling layer, in seconds."""

    poll_interval: int = 300
    watchdog_interval: int = 600
    watchdog_stuck_after: int = 600
    watchdog_forced_check_after: int = 900
    fallback_interval: int = 900
    fallback_stale_after: int = 600
    health_interval: int = 3600
    wake_gap: int = 300
    wake_process_ceiling: int = 60
    catch_up_missing_hours: int = 24
    weekly_weekday: int = 6  # Sunday
    weekly_time: time = time(2, 0)
    next_day_time: time = time(13, 30)
    enabled: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Top-level configuration.

    Attributes:
        db_path: SQLite database file shared by prices and sync state.
        api_url: Provider base URL.
        entities: Tracked entity (country) codes.
        timezone: Reference timezone for calendar-day boundaries.
        earliest_date: Earliest date the provider publishes.
        horizon_days: Watermarks are considered current at today + this.
        lookahead_days: Days scanned ahead when resolving the latest published date.
        lookback_days: Days walked back when searching for a complete date.
        request_timeout: HTTP timeout in seconds.
        chunk_delay: Pause between backfill chunks in seconds.
        range_chunk_days: Largest range fetched in one provider request.
        range_chunk_delay: Pause between oversized range requests in seconds.
        lookahead_delay: Pause between day-by-day lookups in seconds.
    """

    db_path: Path = DEFAULT_DB_PATH
    api_url: str = DEFAULT_API_URL
    entities: tuple[str, ...] = DEFAULT_ENTITIES
    timezone: str = "Europe/Vilnius"
    earliest_date: date = EARLIEST_AVAILABLE_DATE
    horizon_days: int = 2
    lookahead_days: int = 7
    lookback_days: int = 7
    request_timeout: float = 30.0
    chunk_delay: float = 1.0
    range_chunk_days: int = 365
    range_chunk_delay: float = 2.0
    lookahead_delay: float = 0.5
    bounds: CompletenessBounds = field(default_factory=CompletenessBounds)
    window: WindowConfig = field(default_factory=WindowConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def __post_init__(self) -> None:
        if not self.entities:
            raise ConfigurationError("At least one entity must be configured")
        for tz_name in (self.timezone, self.window.timezone):
            _require_timezone(tz_name)
        if self.window.start >= self.window.end:
            raise ConfigurationError(
                f"Publication window start {self.window.start} must precede end {self.window.end}"
            )

    @classmethod
    def from_env(cls, base: SyncConfig | None = None) -> SyncConfig:
        """Create config from environment variables.

        Args:
            base: Config to override. Defaults are used if None.

        Returns:
            SyncConfig instance.

        Raises:
            ConfigurationError: If an environment value is invalid.
        """
        config = base or cls()
        overrides: dict[str, Any] = {}

        if db_path := os.getenv(ENV_DB_PATH):
            overrides["db_path"] = Path(db_path)
        if api_url := os.getenv(ENV_API_URL):
            overrides["api_url"] = api_url.rstrip("/")
        if entities := os.getenv(ENV_ENTITIES):
            overrides["entities"] = _parse_entities(entities)
        if tz_name := os.getenv(ENV_TIMEZONE):
            overrides["timezone"] = tz_name
        if timeout := os.getenv(ENV_REQUEST_TIMEOUT):
            overrides["request_timeout"] = _parse_float(ENV_REQUEST_TIMEOUT, timeout)

        window_overrides: dict[str, Any] = {}
        if window_tz := os.getenv(ENV_WINDOW_TIMEZONE):
            window_overrides["timezone"] = window_tz
        if window_start := os.getenv(ENV_WINDOW_START):
            window_overrides["start"] = _parse_time(ENV_WINDOW_START, window_start)
        if window_end := os.getenv(ENV_WINDOW_END):
            window_overrides["end"] = _parse_time(ENV_WINDOW_END, window_end)
        if window_overrides:
            overrides["window"] = replace(config.window, **window_overrides)

        if (enabled := os.getenv(ENV_SCHEDULER_ENABLED)) is not None:
            overrides["scheduler"] = replace(
                config.scheduler, enabled=_parse_bool(ENV_SCHEDULER_ENABLED, enabled)
            )

        return replace(config, **overrides) if overrides else config

    @classmethod
    def from_file(cls, path: Path | str) -> SyncConfig:
        """Load config from a YAML file.

        Top-level keys match ``SyncConfig`` fields; ``bounds``, ``window`` and
        ``scheduler`` are nested mappings.

        Raises:
            ConfigurationError: If the file is missing, malformed or invalid.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping, got {type(data).__name__}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build config from a plain mapping (e.g. parsed YAML)."""
        data = dict(data)
        nested = {
            "bounds": CompletenessBounds,
            "window": WindowConfig,
            "scheduler": SchedulerConfig,
        }
        kwargs: dict[str, Any] = {}
        for key, section_cls in nested.items():
            if key in data:
                kwargs[key] = _build_section(section_cls, key, data.pop(key))
        kwargs.update(_coerce_fields(cls, "config", data))
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e


def _require_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from e


def _parse_entities(raw: str | list[str]) -> tuple[str, ...]:
    items = raw.split(",") if isinstance(raw, str) else raw
    entities = tuple(str(item).strip().lower() for item in items if str(item).strip())
    if not entities:
        raise ConfigurationError("Entity list is empty")
    return entities


def _parse_time(name: str, raw: str | time) -> time:
    if isinstance(raw, time):
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool) and 0 <= raw < 24 * 60:
        # YAML 1.1 reads unquoted 12:45 as the sexagesimal integer 765
        return time(raw // 60, raw % 60)
    try:
        return time.fromisoformat(str(raw))
    except ValueError as e:
        raise ConfigurationError(f"{name} must be HH:MM, got {raw!r}") from e


def _parse_date(name: str, raw: str | date) -> date:
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError as e:
        raise ConfigurationError(f"{name} must be YYYY-MM-DD, got {raw!r}") from e


def _parse_float(name: str, raw: str | float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _parse_int(name: str, raw: str | int) -> int:
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _parse_bool(name: str, raw: str | bool) -> bool:
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _coerce_fields(cls: type, section: str, data: dict[str, Any]) -> dict[str, Any]:
    """Validate keys of ``data`` against dataclass ``cls`` and coerce values."""
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown keys in {section}: {', '.join(unknown)}")

    defaults = cls()
    coerced: dict[str, Any] = {}
    for key, raw in data.items():
        default = getattr(defaults, key)
        name = f"{section}.{key}"
        if key == "entities":
            coerced[key] = _parse_entities(raw)
        elif key == "db_path":
            coerced[key] = Path(raw)
        elif isinstance(default, bool):
            coerced[key] = _parse_bool(name, raw)
        elif isinstance(default, int):
            coerced[key] = _parse_int(name, raw)
        elif isinstance(default, float):
            coerced[key] = _parse_float(name, raw)
        elif isinstance(default, time):
            coerced[key] = _parse_time(name, raw)
        elif isinstance(default, date):
            coerced[key] = _parse_date(name, raw)
        else:
            coerced[key] = raw
    return coerced


def _build_section(section_cls: type, section: str, raw: Any) -> Any:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{section} must be a mapping")
    return section_cls(**_coerce_fields(section_cls, section, raw))

"""Tests for price sync configuration."""

from __future__ import annotations

from datetime import date, time
from pathlib import Path

import pytest

from price_sync.config import (
    DEFAULT_ENTITIES,
    CompletenessBounds,
    ConfigurationError,
    SyncConfig,
    WindowConfig,
)


class TestDefaults:
    """Tests for default configuration values."""

    def test_default_entities_and_timezones(self) -> None:
        config = SyncConfig()
        assert config.entities == DEFAULT_ENTITIES == ("lt", "ee", "lv", "fi")
        assert config.timezone == "Europe/Vilnius"
        assert config.window.timezone == "Europe/Paris"
        assert config.window.start == time(12, 45)
        assert config.window.end == time(15, 55)
        assert config.earliest_date == date(2012, 7, 1)
        assert config.horizon_days == 2

    def test_default_scheduler_intervals(self) -> None:
        s = SyncConfig().scheduler
        assert s.poll_interval == 300
        assert s.watchdog_interval == 600
        assert s.fallback_interval == 900
        assert s.health_interval == 3600
        assert s.catch_up_missing_hours == 24
        assert s.enabled is True

    def test_looks_published(self) -> None:
        bounds = CompletenessBounds()
        assert bounds.looks_published(96)
        assert bounds.looks_published(24)
        assert not bounds.looks_published(12)
        assert not bounds.looks_published(60)

    def test_empty_entities_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="At least one entity"):
            SyncConfig(entities=())

    def test_unknown_timezone_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown timezone"):
            SyncConfig(timezone="Mars/Olympus")

    def test_inverted_window_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must precede"):
            SyncConfig(window=WindowConfig(start=time(16, 0), end=time(12, 0)))


class TestFromEnv:
    """Tests for environment overrides."""

    def test_no_env_returns_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("PRICE_SYNC_DB_PATH", "PRICE_SYNC_ENTITIES", "PRICE_SYNC_WINDOW_START"):
            monkeypatch.delenv(name, raising=False)
        assert SyncConfig.from_env() == SyncConfig()

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("PRICE_SYNC_DB_PATH", str(tmp_path / "prices.db"))
        monkeypatch.setenv("PRICE_SYNC_ENTITIES", "LT, ee")
        monkeypatch.setenv("PRICE_SYNC_API_URL", "http://localhost:9000/price/")
        monkeypatch.setenv("PRICE_SYNC_WINDOW_START", "12:30")
        monkeypatch.setenv("PRICE_SYNC_SCHEDULER_ENABLED", "false")

        config = SyncConfig.from_env()

        assert config.db_path == tmp_path / "prices.db"
        assert config.entities == ("lt", "ee")
        assert config.api_url == "http://localhost:9000/price"
        assert config.window.start == time(12, 30)
        assert config.window.end == time(15, 55)
        assert config.scheduler.enabled is False

    def test_invalid_bool(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PRICE_SYNC_SCHEDULER_ENABLED", "maybe")
        with pytest.raises(ConfigurationError, match="boolean"):
            SyncConfig.from_env()

    def test_invalid_timeout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PRICE_SYNC_REQUEST_TIMEOUT", "soon")
        with pytest.raises(ConfigurationError, match="number"):
            SyncConfig.from_env()


class TestFromFile:
    """Tests for YAML config files."""

    def test_load_nested_sections(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            """
entities: [lt, lv]
horizon_days: 3
earliest_date: 2015-01-01
window:
  start: "13:00"
  end: "15:00"
scheduler:
  poll_interval: 120
  enabled: no
bounds:
  hourly_min: 22
""",
            encoding="utf-8",
        )

        config = SyncConfig.from_file(path)

        assert config.entities == ("lt", "lv")
        assert config.horizon_days == 3
        assert config.earliest_date == date(2015, 1, 1)
        assert config.window.start == time(13, 0)
        assert config.scheduler.poll_interval == 120
        assert config.scheduler.enabled is False
        assert config.bounds.hourly_min == 22

    def test_unquoted_time_is_read_as_clock_time(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("window:\n  start: 12:30\n", encoding="utf-8")
        assert SyncConfig.from_file(path).window.start == time(12, 30)

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert SyncConfig.from_file(path) == SyncConfig()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            SyncConfig.from_file(tmp_path / "nope.yaml")

    def test_unknown_key(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("entitys: [lt]\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Unknown keys"):
            SyncConfig.from_file(path)

    def test_bad_section_type(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("scheduler: 5\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="scheduler must be a mapping"):
            SyncConfig.from_file(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("entities: [lt\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            SyncConfig.from_file(path)

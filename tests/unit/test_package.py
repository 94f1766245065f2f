"""Basic package tests."""

import importlib

import price_sync


def test_version() -> None:
    """Test package version is set."""
    assert price_sync.__version__ == "0.1.0"


def test_main_importable() -> None:
    """price_sync.__main__ should be importable without side effects."""
    mod = importlib.import_module("price_sync.__main__")
    assert hasattr(mod, "main")
    assert hasattr(mod, "build_parser")

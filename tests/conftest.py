"""
Pytest Configuration

Registers a deterministic hypothesis profile and shared fixtures. Test doubles
live in ``tests/fakes.py``; async code is driven with ``asyncio.run`` inside
synchronous tests.
"""

from __future__ import annotations

import logging
from typing import Generator

import pytest
from hypothesis import HealthCheck, settings

settings.register_profile(
    "tracksearch",
    derandomize=True,
    deadline=None,
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile("tracksearch")


@pytest.fixture(autouse=True)
def _propagate_package_logs() -> Generator[None, None, None]:
    """Let ``caplog`` see records even after ``configure_logging`` ran."""
    root = logging.getLogger("TrackSearch")
    previous = root.propagate
    root.propagate = True
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_tracksearch_handler", False):
            root.removeHandler(handler)
    root.propagate = previous


@pytest.fixture
def track_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    """Point settings at an in-memory index and a temporary ledger."""
    for name in (
        "TRACKSEARCH_INDEX_LOCATION",
        "TRACKSEARCH_INDEX_DENSE_DIM",
        "TRACKSEARCH_INGESTION_LEDGER_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRACKSEARCH_INDEX_LOCATION", ":memory:")
    monkeypatch.setenv("TRACKSEARCH_INDEX_DENSE_DIM", "16")
    monkeypatch.setenv("TRACKSEARCH_INDEX_DENSE_DATATYPE", "float32")
    monkeypatch.setenv("TRACKSEARCH_INGESTION_LEDGER_PATH", str(tmp_path / "ledger.sqlite"))
    yield

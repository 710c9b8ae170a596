"""Shared fixtures for the test suite."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from providers.base import ProgressFormat, ProgressLine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def now_ms():
    return NOW.timestamp() * 1000.0


@pytest.fixture
def resets_in():
    """ISO timestamp ``hours`` after the fixed test clock."""
    def _resets_in(hours):
        return (NOW + timedelta(hours=hours)).isoformat().replace("+00:00", "Z")
    return _resets_in


@pytest.fixture
def make_progress():
    def _make(label="Session", used=10.0, limit=100.0, kind="percent", **kwargs):
        return ProgressLine(label=label, used=used, limit=limit, format=ProgressFormat(kind=kind), **kwargs)
    return _make


@pytest.fixture
def tmp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def tmp_config_path(tmp_dir):
    return os.path.join(tmp_dir, "settings.json")

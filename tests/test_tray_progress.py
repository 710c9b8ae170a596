"""Tests for tray bar aggregation."""

import math

import pytest

from config import ProviderSettings
from providers.base import ProgressFormat, ProgressLine, ProviderMeta, ProviderOutput, ProviderState, TextLine
from scoped_label import make_account_scoped_label
from tray_progress import (
    TrayPrimaryBar,
    aggregate_primary_fraction,
    clamp01,
    find_primary_label,
    get_tray_primary_bars,
)

CODEX = ProviderMeta(id="codex", name="Codex", primary_candidates=("Session",))
CLAUDE = ProviderMeta(id="claude", name="Claude", primary_candidates=("Session",))
COPILOT = ProviderMeta(id="copilot", name="Copilot", primary_candidates=("Premium", "Chat"))
NO_PRIMARY = ProviderMeta(id="opencode", name="OpenCode")


def _progress(label, used, limit):
    return ProgressLine(label=label, used=used, limit=limit, format=ProgressFormat("percent"))


def _state(provider_id, *lines):
    return ProviderState(data=ProviderOutput(provider_id=provider_id, display_name=provider_id, lines=lines))


class TestClamp:
    def test_clamp(self):
        assert clamp01(-0.5) == 0.0
        assert clamp01(1.5) == 1.0
        assert clamp01(0.25) == 0.25
        assert clamp01(math.nan) == 0.0


class TestFindPrimaryLabel:
    def test_first_candidate_present(self):
        data = _state("copilot", _progress("Chat", 1, 10), _progress("Premium", 2, 10)).data
        assert find_primary_label(COPILOT, data) == "Premium"

    def test_falls_through_candidates(self):
        data = _state("copilot", _progress("Chat", 1, 10)).data
        assert find_primary_label(COPILOT, data) == "Chat"

    def test_matches_scoped_labels(self):
        data = _state("codex", _progress(make_account_scoped_label("Work", "a", "Session"), 1, 10)).data
        assert find_primary_label(CODEX, data) == "Session"

    def test_ignores_non_progress_lines(self):
        data = _state("codex", TextLine("Session", "n/a")).data
        assert find_primary_label(CODEX, data) is None


class TestAggregatePrimaryFraction:
    def test_sums_across_accounts(self):
        lines = [
            _progress(make_account_scoped_label("A", "a", "Session"), 10, 100),
            _progress(make_account_scoped_label("B", "b", "Session"), 5, 50),
        ]
        assert aggregate_primary_fraction(lines, "Session", "used") == pytest.approx(0.1)
        assert aggregate_primary_fraction(lines, "Session", "left") == pytest.approx(0.9)

    def test_skips_unusable_limits(self):
        lines = [_progress("Session", 5, 0), _progress("Session", 1, math.inf), _progress("Session", 25, 100)]
        assert aggregate_primary_fraction(lines, "Session", "used") == pytest.approx(0.25)

    def test_none_when_nothing_usable(self):
        assert aggregate_primary_fraction([_progress("Session", 5, 0)], "Session", "used") is None
        assert aggregate_primary_fraction([_progress("Weekly", 5, 10)], "Session", "used") is None

    def test_clamped(self):
        assert aggregate_primary_fraction([_progress("Session", 150, 100)], "Session", "used") == 1.0
        assert aggregate_primary_fraction([_progress("Session", 150, 100)], "Session", "left") == 0.0


class TestGetTrayPrimaryBars:
    def test_no_settings(self):
        assert get_tray_primary_bars([CODEX], None, {}) == []

    def test_order_and_disabled(self):
        settings = ProviderSettings(order=["claude", "codex", "copilot"], disabled=["copilot"])
        states = {
            "claude": _state("claude", _progress("Session", 25, 100)),
            "codex": _state("codex", _progress("Session", 50, 100)),
        }
        bars = get_tray_primary_bars([CODEX, CLAUDE, COPILOT], settings, states, display_mode="used")
        assert bars == [TrayPrimaryBar("claude", 0.25), TrayPrimaryBar("codex", 0.5)]

    def test_skips_providers_without_candidates(self):
        settings = ProviderSettings(order=["opencode", "codex"], disabled=[])
        bars = get_tray_primary_bars([CODEX, NO_PRIMARY], settings, {})
        assert [bar.id for bar in bars] == ["codex"]

    def test_missing_data_gives_empty_bar(self):
        settings = ProviderSettings(order=["codex"], disabled=[])
        assert get_tray_primary_bars([CODEX], settings, {"codex": None}) == [TrayPrimaryBar("codex", None)]

    def test_no_matching_candidate(self):
        settings = ProviderSettings(order=["codex"], disabled=[])
        states = {"codex": _state("codex", _progress("Weekly", 1, 10))}
        assert get_tray_primary_bars([CODEX], settings, states) == [TrayPrimaryBar("codex", None)]

    def test_max_bars(self):
        settings = ProviderSettings(order=["codex", "claude", "copilot"], disabled=[])
        bars = get_tray_primary_bars([CODEX, CLAUDE, COPILOT], settings, {}, max_bars=2)
        assert [bar.id for bar in bars] == ["codex", "claude"]
        assert get_tray_primary_bars([CODEX], settings, {}, max_bars=0) == []

    def test_codex_tokens_end_to_end(self, resets_in):
        meta = ProviderMeta(id="codex", name="Codex", primary_candidates=("Tokens",))
        line = ProgressLine(
            label="Tokens",
            used=450,
            limit=500,
            format=ProgressFormat("count", "tokens"),
            resets_at=resets_in(2),
            period_duration_ms=24 * 60 * 60 * 1000,
        )
        settings = ProviderSettings(order=["codex"], disabled=[])
        bars = get_tray_primary_bars([meta], settings, {"codex": _state("codex", line)}, display_mode="left")
        assert len(bars) == 1
        assert bars[0].fraction == pytest.approx(0.1)

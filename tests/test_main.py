"""Tests for main app module."""

import json
import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

import sys
import types


# Mock macOS-only dependencies before importing main
class FakeMenuItem:
    def __init__(self, title="", callback=None):
        self.title = title
        self._callback = callback
        self.state = 0
        self._items = []

    def set_callback(self, cb):
        self._callback = cb

    def add(self, item):
        self._items.append(item)

    def __iter__(self):
        return iter(self._items)


class FakeMenu:
    def __init__(self):
        self._items = []

    def clear(self):
        self._items.clear()

    def add(self, item):
        self._items.append(item)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)


class FakeTimer:
    def __init__(self, callback, interval):
        self.callback = callback
        self.interval = interval
        self.is_alive = False

    def start(self):
        self.is_alive = True

    def stop(self):
        self.is_alive = False


class FakeApp:
    def __init__(self, name, **kwargs):
        self.name = name
        self.title = name
        self.icon = None
        self.template = kwargs.get("template")
        self.menu = FakeMenu()

    def run(self):
        pass


fake_rumps = MagicMock()
fake_rumps.App = FakeApp
fake_rumps.MenuItem = FakeMenuItem
fake_rumps.Timer = FakeTimer
fake_rumps.separator = "---"
fake_rumps.quit_application = MagicMock()
sys.modules["rumps"] = fake_rumps

fake_apphelper = types.ModuleType("PyObjCTools.AppHelper")
fake_apphelper.callAfter = MagicMock()
fake_pyobjctools = types.ModuleType("PyObjCTools")
fake_pyobjctools.AppHelper = fake_apphelper
sys.modules["PyObjCTools"] = fake_pyobjctools
sys.modules["PyObjCTools.AppHelper"] = fake_apphelper

fake_appkit = types.ModuleType("AppKit")
fake_appkit.NSScreen = MagicMock()
fake_appkit.NSScreen.mainScreen.return_value.backingScaleFactor.return_value = 2.0
sys.modules["AppKit"] = fake_appkit

from PIL import Image

from providers.base import ProviderMeta
from tray_progress import get_tray_primary_bars
from tray_scheduler import IMMEDIATE_S, SETTINGS_DEBOUNCE_S


@pytest.fixture
def app_env(tmp_dir):
    """Config path plus an empty probe feed directory."""
    feed_dir = os.path.join(tmp_dir, "probe")
    os.makedirs(feed_dir)
    config_path = os.path.join(tmp_dir, "settings.json")
    _write_json(config_path, {"probeFeedPath": feed_dir})
    return types.SimpleNamespace(config_path=config_path, feed_dir=feed_dir, tmp_dir=tmp_dir)


def _write_json(path, data):
    with open(path, "w") as f:
        json.dump(data, f)


def _read_json(path):
    with open(path) as f:
        return json.load(f)


def _append_events(feed_dir, *outputs):
    with open(os.path.join(feed_dir, "events.jsonl"), "a") as f:
        for output in outputs:
            f.write(json.dumps({"batchId": "b1", "output": output}) + "\n")


def _session_output(provider_id, used, label="Session", **line_fields):
    line = {"type": "progress", "label": label, "used": used, "limit": 100, "format": {"kind": "percent"}}
    line.update(line_fields)
    return {"providerId": provider_id, "displayName": provider_id.title(), "lines": [line]}


def _titles(items):
    return [item.title for item in items if not isinstance(item, str)]


def _settings_menu(app):
    return next(item for item in app.menu if not isinstance(item, str) and item.title == "Settings")


def _make_app(env):
    import main as app_main
    # No background poll or render thread during construction
    with patch.object(app_main.UsageTrayApp, "_refresh_in_background"), patch("main.TrayIconScheduler"):
        app = app_main.UsageTrayApp(config_path=env.config_path)
    app.scheduler.reset_mock()
    return app


def _poll(app):
    app._apply_probe_events(app.feed.read_new_events(), app.feed.read_accounts())


class TestUsageTrayApp:
    def test_app_initialization(self, app_env):
        app = _make_app(app_env)
        assert app.title is None
        assert os.path.exists(app.icon)
        assert app.timer.is_alive
        assert app.timer.interval == 5

        titles = _titles(app.menu)
        assert "Refresh Now" in titles
        assert "Quit" in titles
        assert "Settings" in titles

    def test_normalized_settings_persisted(self, app_env):
        _make_app(app_env)
        saved = _read_json(app_env.config_path)
        assert saved["providers"]["order"] == ["antigravity", "codex", "copilot", "claude", "opencode", "zai"]
        assert saved["providers"]["disabled"] == ["antigravity", "opencode", "zai"]

    def test_mandatory_percentage_persisted(self, app_env):
        _write_json(
            app_env.config_path,
            {"probeFeedPath": app_env.feed_dir, "trayIconStyle": "textOnly", "trayShowPercentage": False},
        )
        _make_app(app_env)
        assert _read_json(app_env.config_path)["trayShowPercentage"] is True

    def test_unchanged_settings_not_rewritten(self, app_env):
        _make_app(app_env)
        mtime = os.path.getmtime(app_env.config_path)
        os.utime(app_env.config_path, (mtime - 100, mtime - 100))
        _make_app(app_env)
        assert os.path.getmtime(app_env.config_path) == mtime - 100

    def test_seeded_from_snapshots(self, app_env):
        _write_json(os.path.join(app_env.feed_dir, "accounts.json"), [{"id": "a1", "providerId": "codex", "label": "Work"}])
        _write_json(
            os.path.join(app_env.tmp_dir, "snapshots.json"),
            {
                "schemaVersion": 1,
                "snapshots": {
                    "a1": {
                        "accountId": "a1",
                        "providerId": "codex",
                        "displayName": "Codex",
                        "lines": _session_output("codex", 30)["lines"],
                    }
                },
            },
        )
        app = _make_app(app_env)
        assert app.provider_states["codex"].data.lines[0].used == 30

    def test_apply_probe_events(self, app_env):
        _write_json(os.path.join(app_env.feed_dir, "accounts.json"), [{"id": "a1", "providerId": "codex", "label": "Work"}])
        app = _make_app(app_env)
        _append_events(app_env.feed_dir, _session_output("codex", 25), _session_output("mystery", 1))
        _poll(app)

        assert app.provider_states["codex"].data.lines[0].used == 25
        assert "mystery" not in app.provider_states
        app.scheduler.schedule.assert_called_once_with("probe", 0.5)

        snapshots = _read_json(os.path.join(app_env.tmp_dir, "snapshots.json"))
        assert list(snapshots["snapshots"]) == ["a1"]

        titles = _titles(app.menu)
        assert "  Session    75% left" in titles
        assert "↻ Updated just now" in titles

    def test_later_event_replaces_earlier(self, app_env):
        app = _make_app(app_env)
        _append_events(app_env.feed_dir, _session_output("codex", 25), _session_output("codex", 60))
        _poll(app)
        assert app.provider_states["codex"].data.lines[0].used == 60

    def test_error_badge_shown(self, app_env):
        app = _make_app(app_env)
        output = {
            "providerId": "claude",
            "displayName": "Claude",
            "lines": [{"type": "badge", "label": "Error", "text": "Token expired"}],
        }
        _append_events(app_env.feed_dir, output)
        _poll(app)
        assert app.provider_states["claude"].error == "Token expired"
        assert "  ⚠ Token expired" in _titles(app.menu)

    def test_multi_account_menu_grouped(self, app_env):
        _write_json(
            os.path.join(app_env.feed_dir, "accounts.json"),
            [
                {"id": "a1", "providerId": "codex", "label": "Work"},
                {"id": "a2", "providerId": "codex", "label": "Home"},
            ],
        )
        _write_json(app_env.config_path, {"probeFeedPath": app_env.feed_dir, "accountOrderByProvider": {"codex": ["a2", "a1"]}})
        app = _make_app(app_env)
        output = {
            "providerId": "codex",
            "displayName": "Codex",
            "lines": [
                {"type": "progress", "label": "Work @@ a1 :: Session", "used": 10, "limit": 100},
                {"type": "progress", "label": "Home @@ a2 :: Session", "used": 40, "limit": 100},
            ],
        }
        _append_events(app_env.feed_dir, output)
        _poll(app)

        titles = _titles(app.menu)
        assert titles.index("  Home") < titles.index("  Work")
        assert "    Session    60% left" in titles

    def test_move_account_to_top(self, app_env):
        _write_json(
            os.path.join(app_env.feed_dir, "accounts.json"),
            [
                {"id": "a1", "providerId": "codex", "label": "Work"},
                {"id": "a2", "providerId": "codex", "label": "Home"},
            ],
        )
        app = _make_app(app_env)
        app._on_move_account_to_top("codex", "a2", None)
        assert _read_json(app_env.config_path)["accountOrderByProvider"] == {"codex": ["a2", "a1"]}

        order_menu = next(item for item in _settings_menu(app) if getattr(item, "title", "") == "Codex Account Order")
        assert _titles(order_menu) == ["Home", "Work"]

    def test_display_mode_renders_immediately(self, app_env):
        app = _make_app(app_env)
        app._on_display_mode("used", None)
        assert _read_json(app_env.config_path)["displayMode"] == "used"
        app.scheduler.schedule.assert_called_once_with("display_mode", IMMEDIATE_S)

    def test_tray_style_forces_percentage(self, app_env):
        app = _make_app(app_env)
        app._on_tray_icon_style("provider", None)
        saved = _read_json(app_env.config_path)
        assert saved["trayIconStyle"] == "provider"
        assert saved["trayShowPercentage"] is True

        percent_item = next(item for item in _settings_menu(app) if getattr(item, "title", "") == "Show Percentage")
        assert percent_item._callback is None
        assert percent_item.state == 1

    def test_toggle_provider_debounced(self, app_env):
        app = _make_app(app_env)
        app._on_toggle_provider("codex", None)
        assert "codex" in _read_json(app_env.config_path)["providers"]["disabled"]
        app.scheduler.schedule.assert_called_once_with("settings", SETTINGS_DEBOUNCE_S)
        assert "Codex" not in _titles(app.menu)

    def test_save_failure_is_logged(self, app_env):
        app = _make_app(app_env)
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("config.save_config", MagicMock(side_effect=OSError("read-only")))
            app._on_display_mode("used", None)
        assert app.cfg["displayMode"] == "used"

    def test_read_tray_state(self, app_env):
        app = _make_app(app_env)
        state = app._read_tray_state()
        assert state.size_px == 36
        assert state.style == "bars"
        assert state.display_mode == "left"

    def test_apply_tray_icon_alternates_slots(self, app_env):
        app = _make_app(app_env)
        image = Image.new("RGBA", (36, 36))
        app._apply_tray_icon(image)
        first = app._icon_slot_paths[app._icon_slot]
        app._apply_tray_icon(image)
        second = app._icon_slot_paths[app._icon_slot]
        assert first != second
        assert os.path.exists(first) and os.path.exists(second)

        app._set_icon_path(second)
        assert app.icon == second
        assert app.title is None

    def test_codex_tokens_bar(self, app_env):
        _write_json(os.path.join(app_env.feed_dir, "accounts.json"), [{"id": "a1", "providerId": "codex", "label": "Work"}])
        app = _make_app(app_env)
        app.providers_meta = (ProviderMeta(id="codex", name="Codex", primary_candidates=("Tokens",)),)
        resets_at = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()
        output = _session_output(
            "codex", 450, label="Tokens", format={"kind": "count", "suffix": "tokens"},
            resetsAt=resets_at, periodDurationMs=24 * 60 * 60 * 1000,
        )
        output["lines"][0]["limit"] = 500
        _append_events(app_env.feed_dir, output)
        _poll(app)

        state = app._read_tray_state()
        bars = get_tray_primary_bars(
            state.providers_meta, state.provider_settings, state.provider_states, display_mode=state.display_mode
        )
        assert len(bars) == 1
        assert bars[0].id == "codex"
        assert bars[0].fraction == pytest.approx(0.1)

    def test_format_updated_time(self, app_env):
        app = _make_app(app_env)
        assert app._format_updated_time() == "↻ Not yet updated"
        app._last_updated = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert app._format_updated_time() == "↻ Updated 5 min ago"

    def test_quit_cancels_pending_render(self, app_env):
        app = _make_app(app_env)
        app._on_quit(None)
        app.scheduler.cancel.assert_called_once()
        fake_rumps.quit_application.assert_called()

    def test_refresh_in_background_marshals_results(self, app_env):
        _write_json(os.path.join(app_env.feed_dir, "accounts.json"), [{"id": "a1", "providerId": "codex", "label": "Work"}])
        app = _make_app(app_env)
        _append_events(app_env.feed_dir, _session_output("codex", 25))

        with patch("main.AppHelper") as helper:
            app._refresh_in_background()
            for _ in range(100):
                if helper.callAfter.called:
                    break
                time.sleep(0.05)

        callback, events, accounts = helper.callAfter.call_args[0]
        assert callback == app._apply_probe_events
        assert [e.output.provider_id for e in events] == ["codex"]
        assert [a.id for a in accounts] == ["a1"]

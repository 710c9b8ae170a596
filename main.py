"""Usage Tray — macOS menu bar application.

Entry point for the rumps-based menu bar app that shows AI coding plan
usage across providers, fed by the probe service's output directory.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

import rumps
from AppKit import NSScreen
from PIL import Image
from PyObjCTools import AppHelper

import config as app_config
from probe_feed import ProbeEvent, ProbeFeed
from providers.base import (
    AccountRecord,
    BadgeLine,
    MetricLine,
    ProgressLine,
    ProviderMeta,
    ProviderOutput,
    ProviderState,
    TextLine,
)
from providers.registry import PROVIDERS_META, overview_labels
from scoped_label import split_account_scoped_label
from snapshots import (
    ERROR_LABEL,
    PLAN_LABEL,
    AccountSnapshot,
    build_provider_outputs_from_snapshots,
    extract_account_snapshots_from_provider_output,
    load_account_snapshots,
    normalize_account_label,
    prune_snapshots_for_accounts,
    save_account_snapshots,
)
from pace import describe_progress_line
from tray_icon import TrayState, ensure_static_icon, get_tray_icon_size_px
from tray_scheduler import IMMEDIATE_S, PROBE_DEBOUNCE_S, SETTINGS_DEBOUNCE_S, TrayIconScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = "Usage Tray"
STATIC_ICON_FILENAME = "tray-static.png"
ICON_SLOT_FILENAMES = ("tray-icon-a.png", "tray-icon-b.png")


def _backing_scale_factor() -> float:
    screen = NSScreen.mainScreen()
    if screen is None:
        return 1.0
    return float(screen.backingScaleFactor())


def _error_text(output: ProviderOutput) -> str | None:
    for line in output.lines:
        if isinstance(line, BadgeLine) and line.label.strip() == ERROR_LABEL and line.text.strip():
            return line.text.strip()
    return None


class UsageTrayApp(rumps.App):
    """Main menu bar application."""

    def __init__(self, config_path: str | None = None):
        super().__init__(APP_NAME, quit_button=None, template=True)

        self.config_path = config_path or app_config.get_config_path()
        self.cfg = app_config.load_config(self.config_path)
        self.providers_meta: tuple[ProviderMeta, ...] = PROVIDERS_META
        self._normalize_settings()

        self.feed = ProbeFeed(app_config.get_probe_feed_path(self.cfg))
        self._snapshots_path = app_config.get_snapshots_path(self.config_path)

        # Provider state cache — protected by _data_lock
        self._data_lock = threading.Lock()
        self.accounts: list[AccountRecord] = self.feed.read_accounts()
        self._snapshots: dict[str, AccountSnapshot] = load_account_snapshots(self._snapshots_path)
        self.provider_states: dict[str, ProviderState] = {
            provider_id: ProviderState(data=output)
            for provider_id, output in build_provider_outputs_from_snapshots(
                self.providers_meta, self.accounts, self._snapshots
            ).items()
        }
        self._last_updated: Optional[datetime] = None

        # Refresh concurrency — only one feed poll at a time
        self._refresh_lock = threading.Lock()

        icon_dir = os.path.dirname(self.config_path)
        self._static_icon_path = os.path.join(icon_dir, STATIC_ICON_FILENAME)
        self._icon_slot_paths = tuple(os.path.join(icon_dir, name) for name in ICON_SLOT_FILENAMES)
        self._icon_slot = 0
        self._icon_size_px = get_tray_icon_size_px(_backing_scale_factor())
        self._tray_ready = False
        self.scheduler = TrayIconScheduler(self._read_tray_state, self._apply_tray_icon)
        self._init_tray_icon()

        self._build_menu()

        poll_seconds = app_config.get_feed_poll_seconds(self.cfg)
        self.timer = rumps.Timer(self._auto_refresh, poll_seconds)
        self.timer.start()

        # Initial poll in background; the first render uses snapshot data
        self._refresh_in_background()
        self.scheduler.schedule("init", IMMEDIATE_S)

    # ── Settings ──────────────────────────────────────────────

    def _normalize_settings(self) -> None:
        """Reconcile stored providers with the registry; persist only real changes."""
        changed = False
        stored = app_config.get_provider_settings(self.cfg)
        normalized = app_config.normalize_provider_settings(stored, self.providers_meta)
        if not app_config.are_provider_settings_equal(stored, normalized):
            app_config.set_provider_settings(self.cfg, normalized)
            changed = True

        style = app_config.get_tray_icon_style(self.cfg)
        if app_config.is_tray_percentage_mandatory(style) and self.cfg.get("trayShowPercentage") is not True:
            app_config.set_tray_show_percentage(self.cfg, True)
            changed = True

        if changed:
            self._save_config()

    def _save_config(self) -> None:
        try:
            app_config.save_config(self.cfg, self.config_path)
        except OSError as e:
            logger.error("Failed to save settings to %s: %s", self.config_path, e)

    # ── Tray icon ─────────────────────────────────────────────

    def _init_tray_icon(self) -> None:
        try:
            self.icon = ensure_static_icon(self._static_icon_path, self._icon_size_px)
        except OSError as e:
            logger.error("Failed to write static tray icon: %s", e)
            return
        self.title = None
        self._tray_ready = True

    def _read_tray_state(self) -> TrayState | None:
        """Called by the scheduler when a timer fires; None until the tray exists."""
        if not self._tray_ready:
            return None
        with self._data_lock:
            states = dict(self.provider_states)
        return TrayState(
            providers_meta=self.providers_meta,
            provider_settings=app_config.get_provider_settings(self.cfg),
            provider_states=states,
            display_mode=app_config.get_display_mode(self.cfg),
            style=app_config.get_tray_icon_style(self.cfg),
            show_percentage=app_config.get_tray_show_percentage(self.cfg),
            size_px=self._icon_size_px,
        )

    def _apply_tray_icon(self, image: Image.Image | None) -> None:
        """Write the rendered glyph to disk and hand its path to the main thread.

        Renders alternate between two files so the status item never reloads
        a path that is being rewritten.
        """
        if image is None:
            path = self._static_icon_path
        else:
            self._icon_slot = 1 - self._icon_slot
            path = self._icon_slot_paths[self._icon_slot]
            image.save(path, format="PNG")
        AppHelper.callAfter(self._set_icon_path, path)

    def _set_icon_path(self, path: str) -> None:
        """Must be called on the main thread."""
        self.icon = path
        self.title = None

    # ── Probe feed ────────────────────────────────────────────

    def _refresh_in_background(self) -> None:
        """Poll the probe feed in a background thread.

        Uses _refresh_lock to prevent overlapping polls. Results are applied
        on the main thread.
        """
        def _do_refresh():
            if not self._refresh_lock.acquire(blocking=False):
                logger.debug("Refresh already in progress, skipping.")
                return
            try:
                events = self.feed.read_new_events()
                accounts = self.feed.read_accounts()
            except Exception:
                logger.exception("Probe feed poll failed")
                return
            finally:
                self._refresh_lock.release()
            AppHelper.callAfter(self._apply_probe_events, events, accounts)

        thread = threading.Thread(target=_do_refresh, daemon=True)
        thread.start()

    def _apply_probe_events(self, events: list[ProbeEvent], accounts: list[AccountRecord]) -> None:
        """Apply one poll's results — must be called on the main thread."""
        known_ids = {meta.id for meta in self.providers_meta}
        accounts_changed = accounts != self.accounts

        with self._data_lock:
            self.accounts = accounts
            for event in events:
                output = event.output
                if output.provider_id not in known_ids:
                    logger.debug("Ignoring probe output for unknown provider %s", output.provider_id)
                    continue
                self.provider_states[output.provider_id] = ProviderState(
                    data=output, loading=False, error=_error_text(output)
                )

        if events:
            self._last_updated = datetime.now(timezone.utc)
            self._update_snapshots(events, accounts)
            self.scheduler.schedule("probe", PROBE_DEBOUNCE_S)

        if events or accounts_changed:
            self._build_menu()

    def _update_snapshots(self, events: list[ProbeEvent], accounts: list[AccountRecord]) -> None:
        snapshots = dict(self._snapshots)
        for event in events:
            snapshots.update(extract_account_snapshots_from_provider_output(event.output, accounts))
        snapshots, _pruned = prune_snapshots_for_accounts(snapshots, accounts)
        self._snapshots = snapshots
        try:
            save_account_snapshots(snapshots, self._snapshots_path)
        except OSError as e:
            logger.error("Failed to save snapshots to %s: %s", self._snapshots_path, e)

    def _auto_refresh(self, _timer) -> None:
        """Timer callback for feed polling."""
        self._refresh_in_background()

    # ── Menu ──────────────────────────────────────────────────

    def _build_menu(self) -> None:
        """Build the dropdown menu structure."""
        self.menu.clear()

        with self._data_lock:
            states = dict(self.provider_states)
            accounts = list(self.accounts)

        settings = app_config.get_provider_settings(self.cfg)
        display_mode = app_config.get_display_mode(self.cfg)
        now_ms = datetime.now(timezone.utc).timestamp() * 1000.0
        meta_by_id = {meta.id: meta for meta in self.providers_meta}

        for provider_id in app_config.get_enabled_provider_ids(settings):
            meta = meta_by_id.get(provider_id)
            if meta is None:
                continue
            provider_accounts = [a for a in accounts if a.provider_id == provider_id]
            self._add_provider_menu_items(meta, states.get(provider_id), provider_accounts, display_mode, now_ms)

        # Last updated
        self._updated_item = rumps.MenuItem(self._format_updated_time())
        self._updated_item.set_callback(None)
        self.menu.add(self._updated_item)

        self.menu.add(self._build_settings_menu(settings, accounts))

        refresh_item = rumps.MenuItem("Refresh Now")
        refresh_item.set_callback(self._on_refresh_click)
        self.menu.add(refresh_item)

        self.menu.add(rumps.separator)

        quit_item = rumps.MenuItem("Quit")
        quit_item.set_callback(self._on_quit)
        self.menu.add(quit_item)

    def _add_provider_menu_items(
        self,
        meta: ProviderMeta,
        state: ProviderState | None,
        accounts: list[AccountRecord],
        display_mode: str,
        now_ms: float,
    ) -> None:
        """Add menu items for a single provider."""
        data = state.data if state is not None else None

        header_text = meta.name
        if data is not None and data.plan:
            header_text = f"{meta.name}    {data.plan}"
        header = rumps.MenuItem(header_text)
        header.set_callback(None)
        self.menu.add(header)

        if state is not None and state.error:
            error_item = rumps.MenuItem(f"  ⚠ {state.error}")
            error_item.set_callback(None)
            self.menu.add(error_item)

        if data is None:
            placeholder = rumps.MenuItem("  No data yet")
            placeholder.set_callback(None)
            self.menu.add(placeholder)
            self.menu.add(rumps.separator)
            return

        shown = overview_labels(meta)
        unscoped: list[MetricLine] = []
        by_account: dict[str, list[MetricLine]] = {}
        account_labels: dict[str, str] = {}
        for line in data.lines:
            scoped = split_account_scoped_label(line.label)
            if scoped.account_id is None:
                unscoped.append(line)
                continue
            account_labels.setdefault(scoped.account_id, scoped.account_label or scoped.account_id)
            by_account.setdefault(scoped.account_id, []).append(line)

        for line in unscoped:
            self._add_metric_item(line, line.label, shown, display_mode, now_ms, indent="  ")

        order = app_config.get_account_order_by_provider(self.cfg).get(meta.id, [])
        ordered_ids = [a.id for a in app_config.sort_accounts_by_order(accounts, order) if a.id in by_account]
        ordered_ids += [account_id for account_id in by_account if account_id not in ordered_ids]

        for account_id in ordered_ids:
            account_item = rumps.MenuItem(f"  {account_labels[account_id]}")
            account_item.set_callback(None)
            self.menu.add(account_item)
            for line in by_account[account_id]:
                metric_label = split_account_scoped_label(line.label).metric_label
                self._add_metric_item(line, metric_label, shown, display_mode, now_ms, indent="    ")

        self.menu.add(rumps.separator)

    def _add_metric_item(
        self,
        line: MetricLine,
        metric_label: str,
        shown: set[str],
        display_mode: str,
        now_ms: float,
        indent: str,
    ) -> None:
        # Badges only feed the header (Plan) and the error row
        if isinstance(line, BadgeLine) or metric_label in (PLAN_LABEL, ERROR_LABEL):
            return
        if shown and metric_label not in shown:
            return
        if isinstance(line, ProgressLine):
            text = f"{indent}{metric_label}    {describe_progress_line(line, now_ms, display_mode)}"
        elif isinstance(line, TextLine):
            text = f"{indent}{metric_label}    {line.value}"
        else:
            return
        item = rumps.MenuItem(text)
        item.set_callback(None)
        self.menu.add(item)

    def _build_settings_menu(self, settings: app_config.ProviderSettings, accounts: list[AccountRecord]):
        settings_item = rumps.MenuItem("Settings")

        display_mode = app_config.get_display_mode(self.cfg)
        for mode in app_config.DISPLAY_MODES:
            item = rumps.MenuItem(
                f"Show {app_config.DISPLAY_MODE_LABELS[mode]}",
                callback=functools.partial(self._on_display_mode, mode),
            )
            item.state = 1 if mode == display_mode else 0
            settings_item.add(item)
        settings_item.add(rumps.separator)

        style = app_config.get_tray_icon_style(self.cfg)
        for option in app_config.TRAY_ICON_STYLES:
            item = rumps.MenuItem(
                f"Icon: {app_config.TRAY_ICON_STYLE_LABELS[option]}",
                callback=functools.partial(self._on_tray_icon_style, option),
            )
            item.state = 1 if option == style else 0
            settings_item.add(item)

        percent_item = rumps.MenuItem("Show Percentage")
        percent_item.state = 1 if app_config.get_tray_show_percentage(self.cfg) else 0
        if not app_config.is_tray_percentage_mandatory(style):
            percent_item.set_callback(self._on_toggle_percentage)
        settings_item.add(percent_item)
        settings_item.add(rumps.separator)

        disabled = set(settings.disabled)
        meta_by_id = {meta.id: meta for meta in self.providers_meta}
        for provider_id in settings.order:
            meta = meta_by_id.get(provider_id)
            if meta is None:
                continue
            item = rumps.MenuItem(meta.name, callback=functools.partial(self._on_toggle_provider, provider_id))
            item.state = 0 if provider_id in disabled else 1
            settings_item.add(item)

        order_by_provider = app_config.get_account_order_by_provider(self.cfg)
        for provider_id in app_config.get_enabled_provider_ids(settings):
            provider_accounts = [a for a in accounts if a.provider_id == provider_id]
            if len(provider_accounts) <= 1:
                continue
            ordered = app_config.sort_accounts_by_order(provider_accounts, order_by_provider.get(provider_id, []))
            meta = meta_by_id[provider_id]
            order_item = rumps.MenuItem(f"{meta.name} Account Order")
            for index, account in enumerate(ordered):
                label = normalize_account_label(account.label, account.id)
                callback = None if index == 0 else functools.partial(self._on_move_account_to_top, provider_id, account.id)
                order_item.add(rumps.MenuItem(label, callback=callback))
            settings_item.add(order_item)

        return settings_item

    def _format_updated_time(self) -> str:
        """Format the 'last updated' string."""
        latest = self._last_updated
        if latest is None:
            return "↻ Not yet updated"

        diff = datetime.now(timezone.utc) - latest
        minutes = int(diff.total_seconds() / 60)

        if minutes < 1:
            return "↻ Updated just now"
        elif minutes == 1:
            return "↻ Updated 1 min ago"
        else:
            return f"↻ Updated {minutes} min ago"

    # ── Callbacks ─────────────────────────────────────────────

    def _on_display_mode(self, mode: str, _sender) -> None:
        if mode == app_config.get_display_mode(self.cfg):
            return
        app_config.set_display_mode(self.cfg, mode)
        self._save_config()
        self._build_menu()
        self.scheduler.schedule("display_mode", IMMEDIATE_S)

    def _on_tray_icon_style(self, style: str, _sender) -> None:
        if style == app_config.get_tray_icon_style(self.cfg):
            return
        if app_config.set_tray_icon_style(self.cfg, style):
            logger.info("Tray style %s always shows the percentage.", style)
        self._save_config()
        self._build_menu()
        self.scheduler.schedule("icon_style", IMMEDIATE_S)

    def _on_toggle_percentage(self, _sender) -> None:
        if app_config.is_tray_percentage_mandatory(app_config.get_tray_icon_style(self.cfg)):
            return
        app_config.set_tray_show_percentage(self.cfg, not app_config.get_tray_show_percentage(self.cfg))
        self._save_config()
        self._build_menu()
        self.scheduler.schedule("show_percentage", IMMEDIATE_S)

    def _on_toggle_provider(self, provider_id: str, _sender) -> None:
        settings = app_config.get_provider_settings(self.cfg)
        enabled = provider_id in app_config.get_enabled_provider_ids(settings)
        app_config.set_provider_settings(
            self.cfg, app_config.set_provider_enabled(settings, provider_id, not enabled)
        )
        self._save_config()
        self._build_menu()
        self.scheduler.schedule("settings", SETTINGS_DEBOUNCE_S)

    def _on_move_account_to_top(self, provider_id: str, account_id: str, _sender) -> None:
        with self._data_lock:
            provider_accounts = [a for a in self.accounts if a.provider_id == provider_id]
        order_by_provider = app_config.get_account_order_by_provider(self.cfg)
        current = app_config.sort_accounts_by_order(provider_accounts, order_by_provider.get(provider_id, []))
        ordered_ids = [account_id] + [a.id for a in current if a.id != account_id]

        updated = app_config.reorder_provider_accounts(order_by_provider, provider_id, ordered_ids)
        if updated is None:
            return
        app_config.set_account_order(self.cfg, updated)
        self._save_config()
        self._build_menu()

    def _on_refresh_click(self, _sender) -> None:
        """Handle manual refresh button click."""
        self._refresh_in_background()

    def _on_quit(self, _sender) -> None:
        """Handle quit button click."""
        self.scheduler.cancel()
        rumps.quit_application()


def main():
    """Entry point."""
    app = UsageTrayApp()
    app.run()


if __name__ == "__main__":
    main()

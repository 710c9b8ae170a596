"""Configuration management for Usage Tray.

Reads/writes settings from ~/.config/usage-tray/settings.json and
reconciles the stored provider order against the provider registry.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from providers.base import AccountRecord, ProviderMeta

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = os.path.expanduser("~/.config/usage-tray")
DEFAULT_CONFIG_PATH = os.path.join(DEFAULT_CONFIG_DIR, "settings.json")

DISPLAY_MODES = ("used", "left")
TRAY_ICON_STYLES = ("bars", "circle", "provider", "textOnly")

DEFAULT_DISPLAY_MODE = "left"
DEFAULT_TRAY_ICON_STYLE = "bars"
DEFAULT_TRAY_SHOW_PERCENTAGE = False
DEFAULT_FEED_POLL_SECONDS = 5

# Retired style names from older releases.
TRAY_ICON_STYLE_ALIASES = {
    "barsWithPercentText": "bars",
    "barWithPercentText": "bars",
    "circularWithPercentText": "circle",
}

# Providers enabled by default when they first appear.
DEFAULT_ENABLED_PROVIDERS = frozenset({"claude", "codex", "copilot"})

DEFAULT_CONFIG = {
    "providers": {"order": [], "disabled": []},
    "displayMode": DEFAULT_DISPLAY_MODE,
    "trayIconStyle": DEFAULT_TRAY_ICON_STYLE,
    "trayShowPercentage": DEFAULT_TRAY_SHOW_PERCENTAGE,
    "accountOrderByProvider": {},
    "feedPollSeconds": DEFAULT_FEED_POLL_SECONDS,
    "probeFeedPath": "~/.config/usage-tray/probe/",
}

DISPLAY_MODE_LABELS = {"left": "Left", "used": "Used"}
TRAY_ICON_STYLE_LABELS = {
    "bars": "Bars",
    "circle": "Circle",
    "provider": "Provider",
    "textOnly": "%",
}


@dataclass
class ProviderSettings:
    """Persisted provider order and disabled list."""

    order: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> ProviderSettings:
        if not isinstance(raw, dict):
            return cls()
        return cls(order=_string_list(raw.get("order")), disabled=_string_list(raw.get("disabled")))

    def to_dict(self) -> dict[str, list[str]]:
        return {"order": list(self.order), "disabled": list(self.disabled)}


def get_config_path() -> str:
    """Return the path to the settings file."""
    return os.environ.get("USAGE_TRAY_CONFIG_PATH", DEFAULT_CONFIG_PATH)


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load configuration from disk, merging with defaults.

    Handles bad JSON gracefully by falling back to defaults.
    Auto-creates the settings file with defaults on first run.
    """
    path = config_path or get_config_path()
    config = _deep_copy_dict(DEFAULT_CONFIG)

    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                user_config = json.load(f)
            if isinstance(user_config, dict):
                config = _deep_merge(config, user_config)
            else:
                logger.warning("Config file is not a JSON object, using defaults.")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load config from %s: %s — using defaults.", path, e)
    else:
        try:
            save_config(config, path)
            logger.info("Created default config at %s", path)
        except OSError as e:
            logger.warning("Could not create default config: %s", e)

    return _validate_config(config)


def save_config(config: dict[str, Any], config_path: str | None = None) -> None:
    """Save configuration to disk."""
    path = config_path or get_config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(config, f, indent=2)


def _validate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Validate and coerce config values to correct types/ranges."""
    config["providers"] = ProviderSettings.from_dict(config.get("providers")).to_dict()

    if config.get("displayMode") not in DISPLAY_MODES:
        config["displayMode"] = DEFAULT_DISPLAY_MODE

    config["trayIconStyle"] = coerce_tray_icon_style(config.get("trayIconStyle"))

    if not isinstance(config.get("trayShowPercentage"), bool):
        config["trayShowPercentage"] = DEFAULT_TRAY_SHOW_PERCENTAGE

    # Validate accountOrderByProvider
    raw_order = config.get("accountOrderByProvider")
    order_by_provider: dict[str, list[str]] = {}
    if isinstance(raw_order, dict):
        for provider_id, account_ids in raw_order.items():
            if not isinstance(account_ids, list):
                continue
            if not all(isinstance(a, str) for a in account_ids):
                continue
            order_by_provider[provider_id] = list(account_ids)
    config["accountOrderByProvider"] = order_by_provider

    # Validate feedPollSeconds
    try:
        interval = int(config.get("feedPollSeconds", DEFAULT_FEED_POLL_SECONDS))
    except (TypeError, ValueError):
        interval = DEFAULT_FEED_POLL_SECONDS
    config["feedPollSeconds"] = max(1, min(interval, 300))

    feed_path = config.get("probeFeedPath")
    if not isinstance(feed_path, str) or not feed_path.strip():
        config["probeFeedPath"] = DEFAULT_CONFIG["probeFeedPath"]

    return config


def coerce_tray_icon_style(value: Any) -> str:
    """Map a stored style (including retired aliases) onto a current style."""
    if isinstance(value, str):
        if value in TRAY_ICON_STYLE_ALIASES:
            return TRAY_ICON_STYLE_ALIASES[value]
        if value in TRAY_ICON_STYLES:
            return value
    return DEFAULT_TRAY_ICON_STYLE


def is_tray_percentage_mandatory(style: str) -> bool:
    """Styles that carry no gauge must always show the percentage."""
    return style in ("provider", "textOnly")


# ── Provider settings ─────────────────────────────────────────


def normalize_provider_settings(
    settings: ProviderSettings,
    providers: Sequence[ProviderMeta],
) -> ProviderSettings:
    """Reconcile stored provider settings with the known providers.

    Unknown and duplicate ids are dropped, known providers missing from the
    stored order are appended in registry order, and newly appended
    providers start disabled unless they are in DEFAULT_ENABLED_PROVIDERS.
    The input is never mutated.
    """
    known_ids = [provider.id for provider in providers]
    known_set = set(known_ids)

    order: list[str] = []
    seen: set[str] = set()
    for provider_id in settings.order:
        if provider_id not in known_set or provider_id in seen:
            continue
        seen.add(provider_id)
        order.append(provider_id)

    newly_added: list[str] = []
    for provider_id in known_ids:
        if provider_id not in seen:
            seen.add(provider_id)
            order.append(provider_id)
            newly_added.append(provider_id)

    disabled: list[str] = []
    for provider_id in settings.disabled:
        if provider_id in known_set and provider_id not in disabled:
            disabled.append(provider_id)
    for provider_id in newly_added:
        if provider_id not in DEFAULT_ENABLED_PROVIDERS and provider_id not in disabled:
            disabled.append(provider_id)

    return ProviderSettings(order=order, disabled=disabled)


def are_provider_settings_equal(a: ProviderSettings, b: ProviderSettings) -> bool:
    if len(a.order) != len(b.order) or len(a.disabled) != len(b.disabled):
        return False
    return all(x == y for x, y in zip(a.order, b.order)) and all(
        x == y for x, y in zip(a.disabled, b.disabled)
    )


def get_enabled_provider_ids(settings: ProviderSettings) -> list[str]:
    disabled = set(settings.disabled)
    return [provider_id for provider_id in settings.order if provider_id not in disabled]


def set_provider_enabled(settings: ProviderSettings, provider_id: str, enabled: bool) -> ProviderSettings:
    """Return new settings with one provider enabled or disabled."""
    disabled = [pid for pid in settings.disabled if pid != provider_id]
    if not enabled and provider_id in settings.order:
        disabled.append(provider_id)
    return ProviderSettings(order=list(settings.order), disabled=disabled)


# ── Account ordering ──────────────────────────────────────────


def sort_accounts_by_order(accounts: Iterable[AccountRecord], order: Sequence[str]) -> list[AccountRecord]:
    """Sort accounts by a stored id order; unlisted accounts keep their place at the end."""
    accounts = list(accounts)
    if not order or len(accounts) <= 1:
        return accounts
    index = {account_id: i for i, account_id in enumerate(order)}
    return sorted(accounts, key=lambda account: index.get(account.id, len(index)))


def reorder_provider_accounts(
    order_by_provider: dict[str, list[str]],
    provider_id: str,
    ordered_account_ids: Sequence[str],
) -> dict[str, list[str]] | None:
    """Return an updated order mapping, or None if nothing would change."""
    if len(ordered_account_ids) <= 1:
        return None
    current = order_by_provider.get(provider_id, [])
    if list(current) == list(ordered_account_ids):
        return None
    updated = {pid: list(ids) for pid, ids in order_by_provider.items()}
    updated[provider_id] = list(ordered_account_ids)
    return updated


# ── Accessors ─────────────────────────────────────────────────


def get_provider_settings(config: dict[str, Any]) -> ProviderSettings:
    return ProviderSettings.from_dict(config.get("providers"))


def set_provider_settings(config: dict[str, Any], settings: ProviderSettings) -> None:
    config["providers"] = settings.to_dict()


def get_display_mode(config: dict[str, Any]) -> str:
    return config.get("displayMode", DEFAULT_DISPLAY_MODE)


def set_display_mode(config: dict[str, Any], mode: str) -> None:
    if mode not in DISPLAY_MODES:
        raise ValueError(f"Unknown display mode: {mode!r}")
    config["displayMode"] = mode


def get_tray_icon_style(config: dict[str, Any]) -> str:
    return coerce_tray_icon_style(config.get("trayIconStyle"))


def set_tray_icon_style(config: dict[str, Any], style: str) -> bool:
    """Set the tray style. Returns True if the percentage flag was forced on."""
    if style not in TRAY_ICON_STYLES:
        raise ValueError(f"Unknown tray icon style: {style!r}")
    config["trayIconStyle"] = style
    if is_tray_percentage_mandatory(style) and config.get("trayShowPercentage") is not True:
        config["trayShowPercentage"] = True
        return True
    return False


def get_tray_show_percentage(config: dict[str, Any]) -> bool:
    if is_tray_percentage_mandatory(get_tray_icon_style(config)):
        return True
    return bool(config.get("trayShowPercentage", DEFAULT_TRAY_SHOW_PERCENTAGE))


def set_tray_show_percentage(config: dict[str, Any], value: bool) -> None:
    config["trayShowPercentage"] = bool(value)


def get_account_order_by_provider(config: dict[str, Any]) -> dict[str, list[str]]:
    return config.get("accountOrderByProvider", {})


def set_account_order(config: dict[str, Any], order_by_provider: dict[str, list[str]]) -> None:
    config["accountOrderByProvider"] = order_by_provider


def get_feed_poll_seconds(config: dict[str, Any]) -> int:
    """Get probe feed polling interval in seconds."""
    return config.get("feedPollSeconds", DEFAULT_FEED_POLL_SECONDS)


def get_probe_feed_path(config: dict[str, Any]) -> str:
    """Get the probe feed directory, expanded."""
    raw = config.get("probeFeedPath", DEFAULT_CONFIG["probeFeedPath"])
    return os.path.expanduser(raw)


def get_snapshots_path(config_path: str | None = None) -> str:
    """Snapshots live next to the settings file."""
    path = config_path or get_config_path()
    return os.path.join(os.path.dirname(path), "snapshots.json")


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _deep_copy_dict(d: dict) -> dict:
    """Simple deep copy for nested dicts/lists."""
    return json.loads(json.dumps(d))

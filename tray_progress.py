"""Collapse each provider's usage lines into one tray bar fraction."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from config import DEFAULT_DISPLAY_MODE, ProviderSettings
from providers.base import MetricLine, ProgressLine, ProviderMeta, ProviderOutput, ProviderState
from scoped_label import get_base_metric_label

DEFAULT_MAX_BARS = 4


@dataclass(frozen=True)
class TrayPrimaryBar:
    id: str
    fraction: Optional[float] = None


def clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def _progress_lines(lines: Sequence[MetricLine]) -> list[ProgressLine]:
    return [line for line in lines if isinstance(line, ProgressLine)]


def find_primary_label(meta: ProviderMeta, data: ProviderOutput) -> str | None:
    """First primary candidate present as a progress line, ignoring account scoping."""
    present = {get_base_metric_label(line.label) for line in _progress_lines(data.lines)}
    for candidate in meta.primary_candidates:
        if candidate in present:
            return candidate
    return None


def aggregate_primary_fraction(
    lines: Sequence[MetricLine],
    primary_label: str,
    display_mode: str = DEFAULT_DISPLAY_MODE,
) -> float | None:
    """Sum used/limit across every account's line for the primary metric.

    Lines with a non-finite or non-positive limit, or a non-finite used
    value, are ignored. Returns None if nothing usable remains.
    """
    usable = [
        line
        for line in _progress_lines(lines)
        if get_base_metric_label(line.label) == primary_label
        and math.isfinite(line.limit)
        and line.limit > 0
        and math.isfinite(line.used)
    ]
    if not usable:
        return None

    total_limit = sum(line.limit for line in usable)
    total_used = sum(line.used for line in usable)
    if not total_limit > 0:
        return None
    shown = total_used if display_mode == "used" else total_limit - total_used
    return clamp01(shown / total_limit)


def get_tray_primary_bars(
    providers_meta: Sequence[ProviderMeta],
    provider_settings: ProviderSettings | None,
    provider_states: Mapping[str, Optional[ProviderState]],
    max_bars: int = DEFAULT_MAX_BARS,
    display_mode: str = DEFAULT_DISPLAY_MODE,
) -> list[TrayPrimaryBar]:
    """One bar per enabled provider with primary candidates, in settings order."""
    if provider_settings is None or max_bars <= 0:
        return []

    meta_by_id = {meta.id: meta for meta in providers_meta}
    disabled = set(provider_settings.disabled)

    bars: list[TrayPrimaryBar] = []
    for provider_id in provider_settings.order:
        if provider_id in disabled:
            continue
        meta = meta_by_id.get(provider_id)
        if meta is None or not meta.primary_candidates:
            continue

        state = provider_states.get(provider_id)
        data = state.data if state is not None else None

        fraction = None
        if data is not None:
            primary_label = find_primary_label(meta, data)
            if primary_label is not None:
                fraction = aggregate_primary_fraction(data.lines, primary_label, display_mode)

        bars.append(TrayPrimaryBar(id=provider_id, fraction=fraction))
        if len(bars) >= max_bars:
            break

    return bars

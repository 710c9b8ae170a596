"""Pace estimation for usage periods.

Projects current usage linearly to the end of its period and classifies
whether it will stay under, approach, or exceed the limit. All times are
epoch milliseconds.
"""

from __future__ import annotations

import math
from typing import Any, NamedTuple

from config import DEFAULT_DISPLAY_MODE
from providers.base import ProgressLine, format_count

AHEAD = "ahead"
ON_TRACK = "on-track"
BEHIND = "behind"

# Below this share of elapsed period the rate is too noisy to project.
MIN_ELAPSED_FRACTION = 0.05
# Projections at or under this share of the limit count as ahead of pace.
AHEAD_THRESHOLD = 0.8

_STATUS_TEXT = {
    AHEAD: "You're good",
    ON_TRACK: "On track",
    BEHIND: "Using fast",
}


class PaceResult(NamedTuple):
    status: str
    projected_usage: float


def _all_finite(*values: Any) -> bool:
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return True


def calculate_pace_status(
    used: float,
    limit: float,
    resets_at_ms: float,
    period_duration_ms: float,
    now_ms: float,
) -> PaceResult | None:
    """Classify the usage rate for the current period.

    Returns None when the inputs are invalid, the period is over, or less
    than MIN_ELAPSED_FRACTION of it has elapsed. Zero usage is always ahead
    and usage at or over the limit is always behind, regardless of how much
    of the period has elapsed.
    """
    if not _all_finite(used, limit, resets_at_ms, period_duration_ms, now_ms):
        return None
    if limit <= 0 or period_duration_ms <= 0:
        return None

    period_start_ms = resets_at_ms - period_duration_ms
    elapsed_ms = now_ms - period_start_ms
    if elapsed_ms <= 0 or now_ms >= resets_at_ms:
        return None

    if used == 0:
        return PaceResult(AHEAD, 0.0)

    projected_usage = used / elapsed_ms * period_duration_ms

    if used >= limit:
        return PaceResult(BEHIND, projected_usage)

    if elapsed_ms / period_duration_ms < MIN_ELAPSED_FRACTION:
        return None

    if projected_usage <= limit * AHEAD_THRESHOLD:
        status = AHEAD
    elif projected_usage <= limit:
        status = ON_TRACK
    else:
        status = BEHIND
    return PaceResult(status, projected_usage)


def get_pace_status_text(status: str) -> str:
    return _STATUS_TEXT.get(status, _STATUS_TEXT[BEHIND])


def format_compact_duration(delta_ms: float) -> str | None:
    """Format a duration as '2d 3h', '5h 12m', '7m' or '<1m'."""
    if not _all_finite(delta_ms) or delta_ms <= 0:
        return None
    total_minutes = int(delta_ms // 1000) // 60
    total_hours = total_minutes // 60
    days = total_hours // 24
    hours = total_hours % 24
    minutes = total_minutes % 60

    if days > 0:
        return f"{days}d {hours}h"
    if total_hours > 0:
        return f"{total_hours}h {minutes}m"
    if total_minutes > 0:
        return f"{total_minutes}m"
    return "<1m"


def _format_tenths(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.1f}"


def format_projected_percent(value: float, display_mode: str) -> str:
    """Percent to one decimal, rounded toward the cautious side.

    Remaining amounts round down and used amounts round up, so the shown
    value never looks better than reality. Values strictly between 0 and
    100 stay within [0.1, 99.9].
    """
    if not _all_finite(value):
        return "0"
    clamped = max(0.0, min(100.0, value))
    if clamped in (0.0, 100.0):
        return str(int(clamped))

    # round() first so float noise like 57.99999 does not lose a tenth
    scaled = round(clamped * 10, 6)
    if display_mode == "left":
        adjusted = math.floor(scaled) / 10
    else:
        adjusted = math.ceil(scaled) / 10
    bounded = max(0.1, min(99.9, adjusted))
    return _format_tenths(bounded)


def build_pace_detail_text(
    pace_result: PaceResult | None,
    used: float,
    limit: float,
    period_duration_ms: float,
    resets_at_ms: float,
    now_ms: float,
    display_mode: str = DEFAULT_DISPLAY_MODE,
) -> str | None:
    """Tooltip line: time until the limit when behind, else projection at reset."""
    if pace_result is None or not _all_finite(limit) or limit <= 0:
        return None
    if pace_result.projected_usage == 0:
        return None

    if pace_result.status == BEHIND and period_duration_ms > 0:
        rate = pace_result.projected_usage / period_duration_ms
        if rate > 0:
            eta_ms = (limit - used) / rate
            remaining_ms = resets_at_ms - now_ms
            if 0 < eta_ms < remaining_ms:
                duration_text = format_compact_duration(eta_ms)
                if duration_text:
                    return f"Limit in {duration_text}"
        # No ETA before reset; show the projection instead

    projected_percent = min(100.0, max(0.0, pace_result.projected_usage / limit * 100))
    if display_mode == "left":
        shown_percent = 100 - projected_percent
        suffix = "left at reset"
    else:
        shown_percent = projected_percent
        suffix = "used at reset"
    return f"{format_projected_percent(shown_percent, display_mode)}% {suffix}"


def format_reset_in(now_ms: float, resets_at_ms: float | None) -> str | None:
    if resets_at_ms is None or not _all_finite(resets_at_ms, now_ms):
        return None
    delta_ms = resets_at_ms - now_ms
    if delta_ms <= 0:
        return "Resets now"
    return f"Resets in {format_compact_duration(delta_ms) or '<1m'}"


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def describe_progress_line(line: ProgressLine, now_ms: float, display_mode: str = DEFAULT_DISPLAY_MODE) -> str:
    """Menu text for one progress line: amount, reset countdown and pace."""
    if display_mode == "used":
        shown = line.used
        left_suffix = ""
    else:
        shown = max(0.0, line.limit - line.used)
        left_suffix = " left"

    kind = line.format.kind
    if kind == "percent":
        if line.limit > 0:
            percent = min(100.0, max(0.0, shown / line.limit * 100))
        else:
            percent = 0.0
        amount = f"{format_projected_percent(percent, display_mode)}%{left_suffix}"
    elif kind == "dollars":
        amount = f"${_format_number(shown)}{left_suffix}"
    else:
        suffix = f" {line.format.suffix}" if line.format.suffix else ""
        amount = f"{format_count(shown)}{suffix}{left_suffix}"

    parts = [amount]

    resets_at_ms = line.resets_at_ms
    reset_text = format_reset_in(now_ms, resets_at_ms)
    if reset_text:
        parts.append(reset_text)

    if resets_at_ms is not None and line.period_duration_ms is not None:
        pace_result = calculate_pace_status(
            line.used, line.limit, resets_at_ms, line.period_duration_ms, now_ms
        )
        if pace_result is not None:
            parts.append(get_pace_status_text(pace_result.status))
            if line.used < line.limit:
                detail = build_pace_detail_text(
                    pace_result,
                    used=line.used,
                    limit=line.limit,
                    period_duration_ms=line.period_duration_ms,
                    resets_at_ms=resets_at_ms,
                    now_ms=now_ms,
                    display_mode=display_mode,
                )
                if detail:
                    parts.append(detail)

    return " · ".join(parts)

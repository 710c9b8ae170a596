"""Data model for provider usage output.

Mirrors the wire format published by the probe service: camelCase JSON
objects decoded into frozen dataclasses.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

FORMAT_KINDS = ("percent", "dollars", "count")
LINE_SCOPES = ("overview", "detail")


@dataclass(frozen=True)
class ProgressFormat:
    kind: str = "percent"
    suffix: str = ""


@dataclass(frozen=True)
class TextLine:
    label: str
    value: str
    color: Optional[str] = None
    subtitle: Optional[str] = None
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class BadgeLine:
    label: str
    text: str
    color: Optional[str] = None
    subtitle: Optional[str] = None
    type: str = field(default="badge", init=False)


@dataclass(frozen=True)
class ProgressLine:
    label: str
    used: float
    limit: float
    format: ProgressFormat = field(default_factory=ProgressFormat)
    resets_at: Optional[str] = None
    period_duration_ms: Optional[float] = None
    color: Optional[str] = None
    type: str = field(default="progress", init=False)

    @property
    def resets_at_ms(self) -> float | None:
        """Reset timestamp in epoch milliseconds, or None if absent/unparseable."""
        return parse_timestamp_ms(self.resets_at)


MetricLine = Union[TextLine, BadgeLine, ProgressLine]


@dataclass(frozen=True)
class ManifestLine:
    type: str
    label: str
    scope: str = "overview"


@dataclass(frozen=True)
class ProviderMeta:
    """Static descriptor for one provider, loaded once at startup."""

    id: str
    name: str
    icon_url: str = ""
    brand_color: Optional[str] = None
    lines: tuple[ManifestLine, ...] = ()
    primary_candidates: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderOutput:
    """One probe result for one provider."""

    provider_id: str
    display_name: str
    lines: tuple[MetricLine, ...] = ()
    icon_url: str = ""
    plan: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> ProviderOutput | None:
        """Decode a probe event. Returns None when the payload is unusable."""
        if not isinstance(raw, dict):
            return None
        provider_id = raw.get("providerId")
        if not isinstance(provider_id, str) or not provider_id.strip():
            return None
        provider_id = provider_id.strip().lower()

        raw_lines = raw.get("lines")
        lines = []
        if isinstance(raw_lines, list):
            for entry in raw_lines:
                line = metric_line_from_dict(entry)
                if line is not None:
                    lines.append(line)

        display_name = raw.get("displayName")
        icon_url = raw.get("iconUrl")
        plan = raw.get("plan")
        return cls(
            provider_id=provider_id,
            display_name=display_name if isinstance(display_name, str) else provider_id,
            lines=tuple(lines),
            icon_url=icon_url if isinstance(icon_url, str) else "",
            plan=plan if isinstance(plan, str) and plan.strip() else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "providerId": self.provider_id,
            "displayName": self.display_name,
            "lines": [metric_line_to_dict(line) for line in self.lines],
            "iconUrl": self.icon_url,
        }
        if self.plan:
            out["plan"] = self.plan
        return out


@dataclass
class ProviderState:
    """Live state for one provider as seen by the menu and tray."""

    data: Optional[ProviderOutput] = None
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class AccountRecord:
    id: str
    provider_id: str
    label: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> AccountRecord | None:
        if not isinstance(raw, dict):
            return None
        account_id = raw.get("id")
        provider_id = raw.get("providerId")
        if not isinstance(account_id, str) or not account_id.strip():
            return None
        if not isinstance(provider_id, str) or not provider_id.strip():
            return None
        label = raw.get("label")
        return cls(
            id=account_id.strip(),
            provider_id=provider_id.strip().lower(),
            label=label if isinstance(label, str) else "",
        )


def _finite_number(value: Any) -> float | None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _progress_format_from_dict(raw: Any) -> ProgressFormat:
    if not isinstance(raw, dict) or raw.get("kind") not in FORMAT_KINDS:
        return ProgressFormat()
    suffix = raw.get("suffix")
    return ProgressFormat(kind=raw["kind"], suffix=suffix if isinstance(suffix, str) else "")


def metric_line_from_dict(raw: Any) -> MetricLine | None:
    """Decode one wire-format metric line, or None if it is malformed."""
    if not isinstance(raw, dict):
        return None
    label = raw.get("label")
    if not isinstance(label, str):
        return None

    line_type = raw.get("type")
    if line_type == "text":
        value = raw.get("value")
        return TextLine(
            label=label,
            value=value if isinstance(value, str) else "",
            color=_optional_str(raw.get("color")),
            subtitle=_optional_str(raw.get("subtitle")),
        )
    if line_type == "badge":
        text = raw.get("text")
        return BadgeLine(
            label=label,
            text=text if isinstance(text, str) else "",
            color=_optional_str(raw.get("color")),
            subtitle=_optional_str(raw.get("subtitle")),
        )
    if line_type == "progress":
        used = _finite_number(raw.get("used"))
        limit = _finite_number(raw.get("limit"))
        if used is None or limit is None:
            logger.debug("Dropping progress line %r with non-numeric used/limit", label)
            return None
        return ProgressLine(
            label=label,
            used=used,
            limit=limit,
            format=_progress_format_from_dict(raw.get("format")),
            resets_at=_optional_str(raw.get("resetsAt")),
            period_duration_ms=_finite_number(raw.get("periodDurationMs")),
            color=_optional_str(raw.get("color")),
        )
    return None


def metric_line_to_dict(line: MetricLine) -> dict[str, Any]:
    """Encode a metric line back to the wire format."""
    if isinstance(line, ProgressLine):
        fmt: dict[str, Any] = {"kind": line.format.kind}
        if line.format.kind == "count":
            fmt["suffix"] = line.format.suffix
        out: dict[str, Any] = {
            "type": "progress",
            "label": line.label,
            "used": line.used,
            "limit": line.limit,
            "format": fmt,
        }
        if line.resets_at is not None:
            out["resetsAt"] = line.resets_at
        if line.period_duration_ms is not None:
            out["periodDurationMs"] = line.period_duration_ms
    elif isinstance(line, BadgeLine):
        out = {"type": "badge", "label": line.label, "text": line.text}
        if line.subtitle is not None:
            out["subtitle"] = line.subtitle
    else:
        out = {"type": "text", "label": line.label, "value": line.value}
        if line.subtitle is not None:
            out["subtitle"] = line.subtitle
    if line.color is not None:
        out["color"] = line.color
    return out


def with_label(line: MetricLine, label: str) -> MetricLine:
    """Copy a metric line with a different label."""
    return replace(line, label=label)


def parse_timestamp_ms(value: Any) -> float | None:
    """Parse an ISO 8601 timestamp into epoch milliseconds."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    # Naive timestamps are treated as local time by datetime.timestamp()
    return dt.timestamp() * 1000.0


def format_count(n: float) -> str:
    """Format token count: 1234567 -> '1.2M', 123456 -> '123K'."""
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    elif n >= 1_000:
        return f"{n / 1_000:.0f}K"
    if float(n).is_integer():
        return str(int(n))
    return f"{n:.2f}"

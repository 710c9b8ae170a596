"""Tray glyph synthesis.

A glyph is first laid out as a small vector description (``TrayGlyph``)
and then rasterized with Pillow. Shapes are drawn black on a transparent
canvas so only the alpha channel carries information, which lets macOS
treat the result as a template image and recolor it for the menu bar.
"""

from __future__ import annotations

import base64
import functools
import io
import logging
import math
import os
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence, Union

import requests
from PIL import Image, ImageDraw, ImageFont, ImageOps

from config import DEFAULT_DISPLAY_MODE, ProviderSettings, is_tray_percentage_mandatory
from providers.base import ProviderMeta, ProviderState
from tray_progress import TrayPrimaryBar, clamp01, get_tray_primary_bars

logger = logging.getLogger(__name__)

TRANSPARENT = (0, 0, 0, 0)
SUPERSAMPLE = 4
ICON_FETCH_TIMEOUT_S = 10

TRACK_OPACITY = 0.32
REMAINDER_OPACITY = 0.58
FILL_OPACITY = 1.0

MAX_BARS = 4
# Near-full bars keep a tail rounded up to this step so they stay
# distinguishable from 100% after downsampling.
REMAINDER_STEP = 0.15
QUANTIZE_ABOVE = 0.7

FONT_CANDIDATES = (
    "/System/Library/Fonts/SFNS.ttf",
    "/System/Library/Fonts/SFNSText.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
    "/Library/Fonts/Arial Bold.ttf",
    "Arial Bold.ttf",
    "DejaVuSans-Bold.ttf",
)


# ── Vector description ────────────────────────────────────────


@dataclass(frozen=True)
class RoundedBar:
    x: float
    y: float
    w: float
    h: float
    left_radius: float
    right_radius: float
    opacity: float


@dataclass(frozen=True)
class Ring:
    """A stroked circle, or an arc from 12 o'clock clockwise when fraction < 1."""

    cx: float
    cy: float
    radius: float
    stroke_width: float
    opacity: float
    fraction: float = 1.0


@dataclass(frozen=True)
class IconImage:
    x: float
    y: float
    size: float
    href: str


@dataclass(frozen=True)
class Text:
    x: float
    y: float
    text: str
    font_size: int


Shape = Union[RoundedBar, Ring, IconImage, Text]


@dataclass(frozen=True)
class TrayGlyph:
    width: int
    height: int
    shapes: tuple[Shape, ...]


@dataclass(frozen=True)
class GlyphLayout:
    width: int
    height: int
    pad: int
    gap: int
    bars_x: int
    bars_width: int
    text_x: int
    text_y: int
    font_size: int


@dataclass(frozen=True)
class BarFillLayout:
    fill_w: int
    remainder_draw_w: int
    divider_x: Optional[int]


def _round(value: float) -> int:
    """Round half up."""
    return int(math.floor(value + 0.5))


def get_tray_icon_size_px(device_pixel_ratio: float | None) -> int:
    """Pixel size for an 18pt tray slot (36px on Retina)."""
    dpr = device_pixel_ratio
    if not isinstance(dpr, (int, float)) or not math.isfinite(dpr) or dpr <= 0:
        dpr = 1
    return max(18, _round(18 * dpr))


def normalize_percent_text(percent_text: str | None) -> str | None:
    if not isinstance(percent_text, str):
        return None
    trimmed = percent_text.strip()
    return trimmed or None


def format_tray_percent(fraction: float | None) -> str | None:
    if fraction is None or not math.isfinite(fraction):
        return None
    return f"{_round(clamp01(fraction) * 100)}%"


def estimate_text_width_px(text: str, font_size: float) -> int:
    # Empirical fit for bold numeric glyphs at tray sizes.
    return math.ceil(len(text) * font_size * 0.62 + font_size * 0.2)


def get_visual_bar_fraction(fraction: float) -> float:
    """Fraction to draw: near-full values keep a tail in 15% steps."""
    if not math.isfinite(fraction):
        return 0.0
    clamped = clamp01(fraction)
    if QUANTIZE_ABOVE < clamped < 1:
        remainder = 1 - clamped
        # Epsilon keeps exact multiples (e.g. 0.85 -> 0.15) from stepping up
        steps = math.ceil(remainder / REMAINDER_STEP - 1e-9)
        quantized_remainder = min(1.0, steps * REMAINDER_STEP)
        return max(0.0, 1 - quantized_remainder)
    return clamped


def get_min_visible_remainder_px(track_w: int) -> int:
    return max(4, _round(track_w * 0.2))


def get_bar_fill_layout(track_w: int, fraction: float) -> BarFillLayout:
    """Split a track into fill and remainder widths.

    The remainder is drawn at least get_min_visible_remainder_px wide, even
    if that overstates it, so it survives downsampling.
    """
    if not math.isfinite(fraction) or fraction <= 0:
        return BarFillLayout(0, 0, None)

    visual = get_visual_bar_fraction(fraction)
    if visual >= 1:
        return BarFillLayout(track_w, 0, None)

    min_remainder = get_min_visible_remainder_px(track_w)
    max_fill_w = max(1, track_w - min_remainder)
    fill_w = max(1, min(max_fill_w, _round(track_w * visual)))
    true_remainder_w = track_w - fill_w
    remainder_draw_w = min(track_w - 1, max(true_remainder_w, min_remainder))
    return BarFillLayout(fill_w, remainder_draw_w, track_w - remainder_draw_w)


def get_glyph_layout(size_px: int, style: str, percent_text: str | None = None) -> GlyphLayout:
    """Canvas size and anchor points for a glyph, widened for percent text."""
    has_text = bool(percent_text)
    pad = max(1, _round(size_px * 0.08))
    gap = max(1, _round(size_px * 0.03))
    height = size_px
    bars_width = size_px - 2 * pad
    font_size = max(9, _round(size_px * 0.72))
    text_width = estimate_text_width_px(percent_text, font_size) if has_text else 0
    # Optical centering plus a 1px nudge to sit on the menu bar's midline
    text_y = _round(size_px / 2) + 2

    if style == "textOnly":
        text_only_width = max(_round(size_px * 1.08), text_width)
        width = text_only_width + 2 * pad if has_text else size_px
        return GlyphLayout(width, height, pad, gap, pad, bars_width, pad, text_y, font_size)

    if not has_text:
        return GlyphLayout(size_px, height, pad, gap, pad, bars_width, 0, text_y, font_size)

    text_gap = max(2, _round(size_px * 0.08))
    text_area_width = max(20, _round(size_px * 1.5), text_width + pad)
    width = size_px + text_gap + text_area_width + pad
    return GlyphLayout(width, height, pad, gap, pad, bars_width, size_px + text_gap, text_y, font_size)


# ── Styles ────────────────────────────────────────────────────


def _valid_fraction(bar: TrayPrimaryBar | None) -> float | None:
    if bar is None or bar.fraction is None:
        return None
    if not math.isfinite(bar.fraction) or bar.fraction < 0:
        return None
    return bar.fraction


class GlyphStyle(ABC):
    """One way of turning bars into shapes."""

    name: str
    max_bars: int = 1

    def select_bars(self, bars: Sequence[TrayPrimaryBar]) -> list[TrayPrimaryBar]:
        return list(bars[: self.max_bars])

    @abstractmethod
    def draw(
        self,
        bars: Sequence[TrayPrimaryBar],
        layout: GlyphLayout,
        size_px: int,
        provider_icon_url: str | None,
    ) -> list[Shape]:
        ...


class BarsStyle(GlyphStyle):
    name = "bars"
    max_bars = MAX_BARS

    def draw(self, bars, layout, size_px, provider_icon_url):
        n = max(1, min(MAX_BARS, len(bars) or 1))
        # A single bar is drawn at two-bar height so it is not too chunky
        layout_n = max(2, n)
        track_w = layout.bars_width
        track_h = max(1, (layout.height - 2 * layout.pad - (layout_n - 1) * layout.gap) // layout_n)
        rx = max(1, track_h // 3)
        moving_edge_radius = max(0, math.floor(rx * 0.35))
        remainder_lead_radius = max(0, math.floor(rx * 0.2))

        total_bars_height = n * track_h + (n - 1) * layout.gap
        available_height = layout.height - 2 * layout.pad
        y_offset = layout.pad + (available_height - total_bars_height) // 2

        shapes: list[Shape] = []
        for i in range(n):
            bar = bars[i] if i < len(bars) else None
            x = layout.bars_x
            y = y_offset + i * (track_h + layout.gap) + 1
            shapes.append(RoundedBar(x, y, track_w, track_h, rx, rx, TRACK_OPACITY))

            fraction = _valid_fraction(bar)
            if fraction is None:
                continue
            fill = get_bar_fill_layout(track_w, fraction)
            if fill.fill_w > 0:
                right = rx if fill.fill_w >= track_w else moving_edge_radius
                shapes.append(RoundedBar(x, y, fill.fill_w, track_h, rx, right, FILL_OPACITY))
            if fill.fill_w > 0 and fill.remainder_draw_w > 0 and fill.divider_x is not None:
                shapes.append(
                    RoundedBar(
                        x + fill.divider_x,
                        y,
                        fill.remainder_draw_w,
                        track_h,
                        remainder_lead_radius,
                        rx,
                        REMAINDER_OPACITY,
                    )
                )
        return shapes


class CircleStyle(GlyphStyle):
    name = "circle"

    def draw(self, bars, layout, size_px, provider_icon_url):
        chart_size = max(6, size_px - 2 * layout.pad)
        cx = layout.bars_x + chart_size / 2
        cy = layout.height / 2 + 1
        stroke_w = max(2, _round(chart_size * 0.16))
        radius = max(1, math.floor(chart_size / 2 - stroke_w / 2) + 0.5)

        shapes: list[Shape] = [Ring(cx, cy, radius, stroke_w, TRACK_OPACITY)]
        fraction = _valid_fraction(bars[0] if bars else None)
        if fraction is not None and clamp01(fraction) > 0:
            shapes.append(Ring(cx, cy, radius, stroke_w, FILL_OPACITY, fraction=clamp01(fraction)))
        return shapes


class ProviderStyle(GlyphStyle):
    name = "provider"

    def draw(self, bars, layout, size_px, provider_icon_url):
        icon_size = max(6, _round(size_px - layout.pad))
        x = layout.bars_x
        y = _round((layout.height - icon_size) / 2) + 1
        href = provider_icon_url.strip() if isinstance(provider_icon_url, str) else ""
        if href:
            return [IconImage(x, y, icon_size, href)]
        radius = max(2, icon_size / 2 - 1.5)
        stroke_w = max(1.5, _round(icon_size * 0.14))
        return [Ring(x + icon_size / 2, y + icon_size / 2, radius, stroke_w, FILL_OPACITY)]


class TextOnlyStyle(GlyphStyle):
    name = "textOnly"

    def draw(self, bars, layout, size_px, provider_icon_url):
        return []


STYLES: dict[str, GlyphStyle] = {
    style.name: style for style in (BarsStyle(), CircleStyle(), ProviderStyle(), TextOnlyStyle())
}


def get_style(style: str) -> GlyphStyle:
    return STYLES.get(style, STYLES["bars"])


def max_bars_for_style(style: str) -> int:
    return get_style(style).max_bars


def get_bars_for_style(style: str, bars: Sequence[TrayPrimaryBar]) -> list[TrayPrimaryBar]:
    return get_style(style).select_bars(bars)


def make_tray_glyph(
    bars: Sequence[TrayPrimaryBar],
    size_px: int,
    style: str = "bars",
    percent_text: str | None = None,
    provider_icon_url: str | None = None,
) -> TrayGlyph:
    """Lay out the glyph for the given bars without rasterizing it."""
    glyph_style = get_style(style)
    selected = glyph_style.select_bars(bars)
    text = normalize_percent_text(percent_text)
    layout = get_glyph_layout(size_px, glyph_style.name, text)

    shapes = glyph_style.draw(selected, layout, size_px, provider_icon_url)
    if text:
        shapes.append(Text(layout.text_x, layout.text_y, text, layout.font_size))
    return TrayGlyph(layout.width, layout.height, tuple(shapes))


# ── Rasterization ─────────────────────────────────────────────


@functools.lru_cache(maxsize=None)
def load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Bold system font at the given pixel size, or Pillow's default."""
    for name in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


@functools.lru_cache(maxsize=16)
def _fetch_icon_bytes(href: str) -> bytes:
    if href.startswith("data:"):
        header, _, payload = href.partition(",")
        if header.endswith(";base64"):
            return base64.b64decode(payload)
        return urllib.parse.unquote_to_bytes(payload)
    if href.startswith(("http://", "https://")):
        response = requests.get(href, timeout=ICON_FETCH_TIMEOUT_S)
        response.raise_for_status()
        return response.content
    with open(os.path.expanduser(href), "rb") as f:
        return f.read()


def load_icon_image(href: str) -> Image.Image:
    """Load a provider icon from a data URL, http(s) URL or file path.

    Raises on fetch or decode failure; callers decide how to recover.
    """
    image = Image.open(io.BytesIO(_fetch_icon_bytes(href)))
    image.load()
    return image.convert("RGBA")


def _arc_points(cx: float, cy: float, r: float, start_deg: float, end_deg: float, steps: int = 8):
    if r <= 0:
        return [(cx, cy)]
    points = []
    for i in range(steps + 1):
        angle = math.radians(start_deg + (end_deg - start_deg) * i / steps)
        points.append((cx + r * math.cos(angle), cy + r * math.sin(angle)))
    return points


def rounded_bar_points(shape: RoundedBar, scale: float = 1) -> list[tuple[float, float]]:
    """Outline of a bar with independent left and right corner radii."""
    x0 = shape.x * scale
    y0 = shape.y * scale
    # Pillow fills the closing edge pixel, so pull right/bottom in by one
    x1 = (shape.x + shape.w) * scale - 1
    y1 = (shape.y + shape.h) * scale - 1
    limit = min(shape.h, shape.w) / 2
    lr = max(0.0, min(shape.left_radius, limit)) * scale
    rr = max(0.0, min(shape.right_radius, limit)) * scale

    points: list[tuple[float, float]] = []
    points += _arc_points(x1 - rr, y0 + rr, rr, -90, 0)
    points += _arc_points(x1 - rr, y1 - rr, rr, 0, 90)
    points += _arc_points(x0 + lr, y1 - lr, lr, 90, 180)
    points += _arc_points(x0 + lr, y0 + lr, lr, 180, 270)
    return points


def _fill(opacity: float) -> tuple[int, int, int, int]:
    return (0, 0, 0, _round(255 * max(0.0, min(1.0, opacity))))


def _draw_shape(
    layer: Image.Image,
    shape: Shape,
    scale: int,
    icon_loader: Callable[[str], Image.Image],
) -> None:
    draw = ImageDraw.Draw(layer)
    if isinstance(shape, RoundedBar):
        draw.polygon(rounded_bar_points(shape, scale), fill=_fill(shape.opacity))
    elif isinstance(shape, Ring):
        outer = (shape.radius + shape.stroke_width / 2) * scale
        box = [
            shape.cx * scale - outer,
            shape.cy * scale - outer,
            shape.cx * scale + outer,
            shape.cy * scale + outer,
        ]
        width = max(1, _round(shape.stroke_width * scale))
        if shape.fraction >= 1:
            draw.ellipse(box, outline=_fill(shape.opacity), width=width)
        elif shape.fraction > 0:
            draw.arc(box, -90, -90 + 360 * shape.fraction, fill=_fill(shape.opacity), width=width)
    elif isinstance(shape, IconImage):
        size = max(1, _round(shape.size * scale))
        icon = ImageOps.contain(icon_loader(shape.href), (size, size), Image.Resampling.LANCZOS)
        left = _round(shape.x * scale) + (size - icon.width) // 2
        top = _round(shape.y * scale) + (size - icon.height) // 2
        # Template image: keep the icon's alpha, drop its colors
        layer.paste((0, 0, 0, 255), (left, top, left + icon.width, top + icon.height), icon.getchannel("A"))
    elif isinstance(shape, Text):
        font = load_font(shape.font_size * scale)
        bbox = draw.textbbox((0, 0), shape.text, font=font)
        text_h = bbox[3] - bbox[1]
        origin = (shape.x * scale - bbox[0], shape.y * scale - bbox[1] - text_h / 2)
        draw.text(origin, shape.text, fill=_fill(FILL_OPACITY), font=font)


def rasterize_glyph(
    glyph: TrayGlyph,
    icon_loader: Callable[[str], Image.Image] = load_icon_image,
) -> Image.Image:
    """Render a glyph to an RGBA image, supersampled for anti-aliasing."""
    scale = SUPERSAMPLE
    canvas = Image.new("RGBA", (glyph.width * scale, glyph.height * scale), TRANSPARENT)
    for shape in glyph.shapes:
        layer = Image.new("RGBA", canvas.size, TRANSPARENT)
        _draw_shape(layer, shape, scale, icon_loader)
        canvas = Image.alpha_composite(canvas, layer)
    return canvas.resize((glyph.width, glyph.height), Image.Resampling.LANCZOS)


def render_tray_bars_icon(
    bars: Sequence[TrayPrimaryBar],
    size_px: int,
    style: str = "bars",
    percent_text: str | None = None,
    provider_icon_url: str | None = None,
    icon_loader: Callable[[str], Image.Image] = load_icon_image,
) -> Image.Image:
    """Render the tray glyph. ``image.tobytes()`` is the raw RGBA buffer."""
    glyph = make_tray_glyph(bars, size_px, style, percent_text, provider_icon_url)
    return rasterize_glyph(glyph, icon_loader)


def render_static_icon(size_px: int = 36) -> Image.Image:
    """The fallback gauge shown when there is nothing to draw."""
    empty = [TrayPrimaryBar(id=""), TrayPrimaryBar(id="")]
    return render_tray_bars_icon(empty, size_px, style="bars")


def ensure_static_icon(path: str, size_px: int = 36) -> str:
    """Write the fallback gauge to disk once and return its path."""
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        render_static_icon(size_px).save(path, format="PNG")
        logger.info("Wrote static tray icon to %s", path)
    return path


# ── Composition ───────────────────────────────────────────────


@dataclass
class TrayState:
    """Snapshot of everything one tray render reads."""

    providers_meta: Sequence[ProviderMeta]
    provider_settings: Optional[ProviderSettings]
    provider_states: Mapping[str, Optional[ProviderState]]
    display_mode: str = DEFAULT_DISPLAY_MODE
    style: str = "bars"
    show_percentage: bool = False
    size_px: int = 36


def _provider_icon_url(state: TrayState, provider_id: str) -> str | None:
    provider_state = state.provider_states.get(provider_id)
    if provider_state is not None and provider_state.data is not None and provider_state.data.icon_url:
        return provider_state.data.icon_url
    for meta in state.providers_meta:
        if meta.id == provider_id:
            return meta.icon_url or None
    return None


def compose_tray_icon(
    state: TrayState,
    icon_loader: Callable[[str], Image.Image] = load_icon_image,
) -> Image.Image | None:
    """Render the tray icon for a state snapshot.

    Returns None when the static fallback glyph should be shown instead:
    no bars at all, or text-only style with no percentage to show.
    """
    style = get_style(state.style).name
    bars = get_tray_primary_bars(
        state.providers_meta,
        state.provider_settings,
        state.provider_states,
        max_bars=max_bars_for_style(style),
        display_mode=state.display_mode,
    )
    if not bars:
        return None

    percent_text = None
    if is_tray_percentage_mandatory(style) or state.show_percentage:
        percent_text = format_tray_percent(bars[0].fraction)

    if style == "textOnly" and not percent_text:
        return None

    provider_icon_url = _provider_icon_url(state, bars[0].id) if style == "provider" else None
    return render_tray_bars_icon(
        bars,
        state.size_px,
        style=style,
        percent_text=percent_text,
        provider_icon_url=provider_icon_url,
        icon_loader=icon_loader,
    )

"""Static registry of known usage providers."""

from __future__ import annotations

from providers.base import ManifestLine, ProviderMeta


def _lines(*specs: tuple[str, str, str]) -> tuple[ManifestLine, ...]:
    return tuple(ManifestLine(type=t, label=label, scope=scope) for t, label, scope in specs)


ANTIGRAVITY = ProviderMeta(
    id="antigravity",
    name="Antigravity",
    brand_color="#4285F4",
    lines=_lines(
        ("progress", "Gemini 3 Pro", "overview"),
        ("progress", "Gemini 3 Flash", "overview"),
        ("progress", "Claude Opus 4.5", "overview"),
        ("progress", "Prompt Credits", "detail"),
    ),
    primary_candidates=(
        "Gemini 3 Pro",
        "Gemini 3 Flash",
        "Claude Opus 4.5",
        "Claude Sonnet 4.5",
        "GPT-OSS 120B",
    ),
)

CODEX = ProviderMeta(
    id="codex",
    name="Codex",
    brand_color="#74AA9C",
    lines=_lines(
        ("progress", "Session", "overview"),
        ("progress", "Weekly", "overview"),
        ("progress", "Reviews", "detail"),
        ("progress", "Credits", "detail"),
    ),
    primary_candidates=("Session",),
)

COPILOT = ProviderMeta(
    id="copilot",
    name="Copilot",
    brand_color="#A855F7",
    lines=_lines(
        ("progress", "Premium", "overview"),
        ("progress", "Chat", "overview"),
        ("progress", "Completions", "overview"),
    ),
    primary_candidates=("Premium", "Chat"),
)

CLAUDE = ProviderMeta(
    id="claude",
    name="Claude",
    brand_color="#DE7356",
    lines=_lines(
        ("progress", "Session", "overview"),
        ("progress", "Weekly", "overview"),
        ("progress", "Sonnet", "detail"),
        ("progress", "Extra usage", "detail"),
    ),
    primary_candidates=("Session",),
)

OPENCODE = ProviderMeta(
    id="opencode",
    name="OpenCode",
    brand_color="#3B82F6",
    lines=_lines(
        ("progress", "Session", "overview"),
        ("progress", "Weekly", "overview"),
        ("text", "Monthly Cost", "overview"),
        ("badge", "Subscription Rows", "detail"),
    ),
    primary_candidates=("Session",),
)

ZAI = ProviderMeta(
    id="zai",
    name="Z.ai",
    brand_color="#2D2D2D",
    lines=_lines(
        ("progress", "Token Usage", "overview"),
        ("progress", "Utility Usage", "overview"),
    ),
    primary_candidates=("Token Usage", "Utility Usage"),
)

# Registry order is the default provider order for new installs.
PROVIDERS_META: tuple[ProviderMeta, ...] = (ANTIGRAVITY, CODEX, COPILOT, CLAUDE, OPENCODE, ZAI)

PROVIDERS: dict[str, ProviderMeta] = {meta.id: meta for meta in PROVIDERS_META}


def get_provider_meta(provider_id: str) -> ProviderMeta | None:
    return PROVIDERS.get(provider_id)


def overview_labels(meta: ProviderMeta) -> set[str]:
    """Metric labels the provider shows in the menu overview."""
    return {line.label for line in meta.lines if line.scope == "overview"}

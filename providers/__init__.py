"""Usage Tray — provider data model and registry."""

from providers.base import (
    AccountRecord,
    BadgeLine,
    ManifestLine,
    MetricLine,
    ProgressFormat,
    ProgressLine,
    ProviderMeta,
    ProviderOutput,
    ProviderState,
    TextLine,
)
from providers.registry import PROVIDERS, PROVIDERS_META, get_provider_meta

__all__ = [
    "AccountRecord",
    "BadgeLine",
    "ManifestLine",
    "MetricLine",
    "ProgressFormat",
    "ProgressLine",
    "ProviderMeta",
    "ProviderOutput",
    "ProviderState",
    "TextLine",
    "PROVIDERS",
    "PROVIDERS_META",
    "get_provider_meta",
]

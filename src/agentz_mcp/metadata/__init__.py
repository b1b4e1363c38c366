"""Derived session metadata."""

from .aggregator import BASELINE_SYSTEM_TOKENS, CHARS_PER_TOKEN, CONTEXT_LIMITS, MetadataAggregator
from .taxonomy import TaxonomyLoadError, TaxonomyLoader, ToolSpec, ToolTaxonomy

__all__ = [
    "BASELINE_SYSTEM_TOKENS",
    "CHARS_PER_TOKEN",
    "CONTEXT_LIMITS",
    "MetadataAggregator",
    "TaxonomyLoadError",
    "TaxonomyLoader",
    "ToolSpec",
    "ToolTaxonomy",
]

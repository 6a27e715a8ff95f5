"""
Source adapter and enrichment provider registries.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from .base import SourceAdapter, EnrichmentProvider, FetchTarget
from .http_source import HTTPSourceAdapter
from .providers import GoogleKnowledgeGraphProvider, HTTPEnrichmentProvider

logger = logging.getLogger(__name__)

# Registry of available adapter kinds
ADAPTER_REGISTRY = {
    "http_api": HTTPSourceAdapter,
}

PROVIDER_REGISTRY = {
    "http_api": HTTPEnrichmentProvider,
    "google_kg": GoogleKnowledgeGraphProvider,
}


def get_adapter(kind: str, config: Dict[str, Any]) -> SourceAdapter:
    """
    Factory function to create an adapter from stored configuration.

    Args:
        kind: Adapter kind (http_api)
        config: Adapter config dict
    """
    adapter_class = ADAPTER_REGISTRY.get(kind)

    if not adapter_class:
        raise ValueError(
            f"Unknown adapter kind: {kind}. "
            f"Available: {list(ADAPTER_REGISTRY.keys())}"
        )

    return adapter_class(config)


def load_sources(path: Optional[str]) -> Dict[str, SourceAdapter]:
    """
    Build adapters from a JSON file of the form
    {"<source_type>": {"kind": "http_api", ...adapter config}}.
    """
    if not path:
        return {}

    with open(path) as f:
        definitions = json.load(f)

    adapters = {}
    for source_type, definition in definitions.items():
        config = dict(definition)
        kind = config.pop("kind", "http_api")
        config.setdefault("source_type", source_type)
        adapters[source_type] = get_adapter(kind, config)
    return adapters


def get_provider(kind: str, config: Dict[str, Any]) -> EnrichmentProvider:
    """Factory function to create an enrichment provider from configuration."""
    provider_class = PROVIDER_REGISTRY.get(kind)

    if not provider_class:
        raise ValueError(
            f"Unknown provider kind: {kind}. "
            f"Available: {list(PROVIDER_REGISTRY.keys())}"
        )

    return provider_class(config)


def load_providers(
    path: Optional[str] = None,
    google_kg_api_key: Optional[str] = None
) -> List[EnrichmentProvider]:
    """
    Build enrichment providers from a JSON file of the form
    {"<name>": {"kind": "http_api" | "google_kg", "quality": 0.7, ...}}.

    A Google Knowledge Graph key adds that provider when the file does not
    already define one.
    """
    providers: List[EnrichmentProvider] = []

    if path:
        with open(path) as f:
            definitions = json.load(f)

        for name, definition in definitions.items():
            config = dict(definition)
            kind = config.pop("kind", "http_api")
            config.setdefault("name", name)
            providers.append(get_provider(kind, config))

    if google_kg_api_key and not any(isinstance(p, GoogleKnowledgeGraphProvider) for p in providers):
        providers.append(GoogleKnowledgeGraphProvider({"api_key": google_kg_api_key}))

    logger.info(f"Loaded {len(providers)} enrichment provider(s): {[p.name for p in providers]}")
    return providers

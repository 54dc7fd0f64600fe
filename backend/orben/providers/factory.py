"""Registry of search providers by name."""

from typing import Dict, List, Optional

import httpx
import structlog

from orben.config import settings
from orben.providers.base import BaseProvider


logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Holds provider instances keyed by name.

    ``resolve`` expands ``auto`` (or an empty request) to the configured
    default providers and de-duplicates while keeping order.
    """

    def __init__(self, default_providers: Optional[List[str]] = None):
        self._providers: Dict[str, BaseProvider] = {}
        self.default_providers = default_providers or settings.get_default_providers()

    def register(self, provider: BaseProvider) -> None:
        if not isinstance(provider, BaseProvider):
            raise ValueError(f"Provider must inherit from BaseProvider: {provider!r}")
        self._providers[provider.name] = provider
        logger.info("provider_registered", provider=provider.name, configured=provider.is_configured)

    def get(self, name: str) -> Optional[BaseProvider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers.keys())

    def resolve(self, requested: Optional[List[str]]) -> List[str]:
        names = [p.strip().lower() for p in requested or [] if p and p.strip()]
        if not names or "auto" in names:
            names = list(self.default_providers)
        resolved: List[str] = []
        for name in names:
            if name not in resolved:
                resolved.append(name)
        return resolved


def build_default_registry(http_client: httpx.AsyncClient) -> ProviderRegistry:
    """Registry with every built-in provider sharing one HTTP client."""
    from orben.providers.oxylabs import EbayProvider, OxylabsAmazonProvider
    from orben.providers.serpapi import GoogleShoppingProvider

    registry = ProviderRegistry()
    for provider_class in (GoogleShoppingProvider, EbayProvider, OxylabsAmazonProvider):
        registry.register(provider_class(http_client=http_client))
    return registry

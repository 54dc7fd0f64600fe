"""Universal product search providers."""

from orben.providers.base import BaseProvider
from orben.providers.factory import ProviderRegistry, build_default_registry

__all__ = ["BaseProvider", "ProviderRegistry", "build_default_registry"]

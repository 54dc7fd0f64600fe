"""Factory for creating and managing fetcher instances."""

from typing import Dict, Optional, Type

import httpx
import structlog

from orben.config import settings
from orben.ingestion.base import BaseFetcher
from orben.ingestion.utils.rate_limiter import DomainRateLimiter


logger = structlog.get_logger(__name__)


def build_http_client() -> httpx.AsyncClient:
    """Shared outbound client for all fetchers."""
    return httpx.AsyncClient(
        timeout=settings.FETCH_TIMEOUT_SECONDS,
        follow_redirects=True,
        headers={"User-Agent": settings.USER_AGENT},
    )


class FetcherFactory:
    """Creates fetchers by source type and injects shared dependencies.

    The HTTP client and per-domain rate limiter are shared by every
    fetcher this factory creates.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        max_attempts: Optional[int] = None,
    ):
        self.http_client = http_client
        self.rate_limiter = rate_limiter or DomainRateLimiter()
        self.max_attempts = max_attempts
        self._owns_client = http_client is None
        self._registry: Dict[str, Type[BaseFetcher]] = {}

    def register_fetcher(self, source_type: str, fetcher_class: Type[BaseFetcher]) -> None:
        """Register a fetcher class for a source type.

        Args:
            source_type: Source type (e.g., "rss")
            fetcher_class: Fetcher class (must inherit from BaseFetcher)
        """
        if not issubclass(fetcher_class, BaseFetcher):
            raise ValueError(f"Fetcher class must inherit from BaseFetcher: {fetcher_class}")
        self._registry[source_type] = fetcher_class
        logger.info("fetcher_registered", source_type=source_type)

    def create_fetcher(self, source_type: str) -> Optional[BaseFetcher]:
        """Create a configured fetcher, or None if the type is not registered."""
        fetcher_class = self._registry.get(source_type)
        if not fetcher_class:
            logger.warning("fetcher_not_found", source_type=source_type)
            return None

        if self.http_client is None:
            self.http_client = build_http_client()

        return fetcher_class(
            http_client=self.http_client,
            rate_limiter=self.rate_limiter,
            max_attempts=self.max_attempts,
        )

    def has_fetcher(self, source_type: str) -> bool:
        return source_type in self._registry

    def registered_types(self) -> list[str]:
        return list(self._registry.keys())

    async def close(self) -> None:
        """Close the HTTP client if this factory created it."""
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None


def register_default_fetchers(factory: FetcherFactory) -> FetcherFactory:
    """Register the built-in fetcher for every pollable source type.

    ``manual`` sources get no fetcher, so the scheduler never polls them.
    """
    from orben.ingestion.fetchers import AffiliateFeedFetcher, APIFetcher, RSSFetcher

    for fetcher_class in (RSSFetcher, AffiliateFeedFetcher, APIFetcher):
        factory.register_fetcher(fetcher_class.source_type, fetcher_class)
    logger.info("fetchers_registered", types=factory.registered_types())
    return factory

"""Base search provider interface.

Providers own their outbound request/response shape. ``search`` returns the
provider's raw payload; ``normalize`` maps it to SearchResult rows via
``orben.providers.normalize``.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx
import structlog

from orben.core.exceptions import FetchError
from orben.ingestion.base import parse_retry_after
from orben.schemas.search import SearchResult


class BaseProvider(ABC):
    """Abstract base class for product search providers."""

    name: str = ""  # Must be overridden in subclass

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client
        self.logger = structlog.get_logger(provider=self.name)

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when the provider has the credentials it needs."""

    @abstractmethod
    async def search(self, query: str, country: str, limit: int, page: int = 1) -> Any:
        """Run one provider call for a normalized query.

        Args:
            query: Normalized query
            country: ISO country code
            limit: Maximum results wanted
            page: 1-based result page

        Returns:
            Raw provider payload

        Raises:
            FetchError: On timeout, transport or HTTP error
        """

    @abstractmethod
    def normalize(self, payload: Any, limit: int) -> List[SearchResult]:
        """Map a raw payload to normalized results."""

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self.http_client is None:
            raise FetchError(self.name, "no HTTP client configured", retryable=False)
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise FetchError(self.name, f"timeout: {e!r}", retryable=True) from e
        except httpx.HTTPError as e:
            raise FetchError(self.name, f"network error: {e!r}", retryable=True) from e

        status = response.status_code
        if status == 429:
            raise FetchError(
                self.name,
                "rate limited (HTTP 429)",
                retryable=True,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 400:
            self.logger.error("provider_request_failed", status=status, body=response.text[:300])
            raise FetchError(self.name, f"HTTP {status}", retryable=status >= 500, status_code=status)
        return response

    @staticmethod
    def _json(response: httpx.Response, provider: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(provider, f"invalid JSON: {e}", retryable=False) from e

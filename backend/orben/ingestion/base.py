"""Base fetcher interface.

One fetcher per source *type*. Fetchers return raw, source-specific
records; the Normalizer is the only place their shape is interpreted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import structlog

from orben.config import settings
from orben.core.exceptions import FetchError
from orben.ingestion.utils.retry import fetch_retrying

if TYPE_CHECKING:
    from orben.ingestion.registry import SourceSnapshot
    from orben.ingestion.utils.rate_limiter import DomainRateLimiter


@dataclass
class RawRecord:
    """One source-specific item as fetched, before normalization."""

    source_type: str
    data: Dict[str, Any]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FetchResult:
    """Raw records plus fetch metadata."""

    records: List[RawRecord]
    http_status: Optional[int] = None
    items_skipped: int = 0  # unparseable entries dropped by the fetcher
    pages: int = 1

    @property
    def item_count(self) -> int:
        return len(self.records)


def _to_rpm(value: Any) -> Optional[int]:
    try:
        rpm = int(value)
    except (TypeError, ValueError):
        return None
    return rpm if rpm > 0 else None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class BaseFetcher(ABC):
    """Abstract base class for all source fetchers.

    The HTTP client and rate limiter are injected by the FetcherFactory.
    A fetcher never retries on its own beyond one fetch call: retryable
    failures are retried within the call, everything else surfaces as a
    FetchError and waits for the next scheduled poll.
    """

    source_type: str = ""  # Must be overridden in subclass

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional["DomainRateLimiter"] = None,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable] = None,
    ):
        self.http_client = http_client
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts if max_attempts is not None else settings.FETCH_MAX_ATTEMPTS
        self._sleep = sleep
        self.logger = structlog.get_logger(fetcher=self.source_type)

    @abstractmethod
    async def fetch(self, source: "SourceSnapshot") -> FetchResult:
        """Fetch raw records for one source.

        Args:
            source: Snapshot of the source to poll

        Returns:
            FetchResult with raw records and HTTP metadata

        Raises:
            FetchError: On timeout, transport error, HTTP error or parse error
        """

    def _require_endpoint(self, source: "SourceSnapshot") -> str:
        if not source.endpoint:
            raise FetchError(source.slug, "source has no endpoint", retryable=False)
        return source.endpoint

    async def _get(self, source: "SourceSnapshot", url: str, **kwargs) -> httpx.Response:
        """GET a URL once, mapping every failure mode to FetchError."""
        if self.http_client is None:
            raise FetchError(source.slug, "no HTTP client configured", retryable=False)

        if self.rate_limiter:
            rpm = _to_rpm((source.config or {}).get("rate_limit_rpm"))
            await self.rate_limiter.acquire(urlparse(url).netloc, rpm=rpm)

        try:
            response = await self.http_client.get(url, **kwargs)
        except httpx.TimeoutException as e:
            raise FetchError(source.slug, f"timeout: {e!r}", retryable=True) from e
        except httpx.HTTPError as e:
            raise FetchError(source.slug, f"network error: {e!r}", retryable=True) from e

        status = response.status_code
        if status == 429:
            raise FetchError(
                source.slug,
                "rate limited (HTTP 429)",
                retryable=True,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise FetchError(source.slug, f"HTTP {status}", retryable=True, status_code=status)
        if status >= 400:
            self.logger.error("fetch_rejected", source=source.slug, url=url, status=status)
            raise FetchError(source.slug, f"HTTP {status}", retryable=False, status_code=status)

        return response

    async def _get_with_retry(self, source: "SourceSnapshot", url: str, **kwargs) -> httpx.Response:
        """GET with tenacity retries for retryable FetchErrors."""
        async for attempt in fetch_retrying(self.max_attempts, sleep=self._sleep):
            with attempt:
                return await self._get(source, url, **kwargs)

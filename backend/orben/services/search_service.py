"""Universal product search: cache-first fan-out across providers.

Every cache key and budget decision uses the *normalized* query, so
"  Fluval   Filter" and "fluval filter" share one cache entry.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import structlog

from orben.config import settings
from orben.core.exceptions import BudgetExhausted, CacheUnavailable, FetchError, UserQuotaExceeded
from orben.providers.factory import ProviderRegistry
from orben.schemas.search import (
    FlushCacheResponse,
    ProductOffersResponse,
    ProviderOutcome,
    SearchResponse,
    SearchResult,
)
from orben.services.budget_guard import BudgetGuard
from orben.services.cache_service import CacheService

logger = structlog.get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# Provider outcomes that count as an answer
ANSWERED = frozenset(["cached", "ok", "empty"])

OFFERS_PROVIDER = "google"


def normalize_query(query: str) -> str:
    """Lowercase, collapse whitespace, trim."""
    return _WHITESPACE_RE.sub(" ", query or "").strip().lower()


def query_hash(normalized_query: str) -> str:
    return hashlib.md5(normalized_query.encode("utf-8")).hexdigest()


def search_cache_key(
    provider: str,
    country: str,
    query: str,
    limit: Optional[int] = None,
    page: int = 1,
    version: Optional[int] = None,
) -> str:
    """Build ``search:v{N}:{provider}:{country}:{md5(...)}``.

    The hashed part is ``provider:COUNTRY:normalized query:limit:page``, so
    pages and result sizes are cached separately. Flush tooling rebuilds
    keys with this same function; there is no reverse index of written keys.
    """
    version = settings.SEARCH_CACHE_VERSION if version is None else version
    limit = limit or settings.SEARCH_DEFAULT_LIMIT
    country = country.upper()
    digest = query_hash(f"{provider}:{country}:{normalize_query(query)}:{limit}:{page}")
    return f"search:v{version}:{provider}:{country}:{digest}"


def product_offers_key(page_token: str) -> str:
    return f"product:offers:{hashlib.md5(page_token.encode('utf-8')).hexdigest()}"


@dataclass
class _CacheState:
    down: bool = False


class SearchOrchestrator:
    """Cache-first, budget-gated multi-provider search.

    Providers run concurrently, each bounded by its own timeout. A
    provider that is unknown, unconfigured, over budget, failing or slow
    is reported in the response and simply contributes no results.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        budget_guard: BudgetGuard,
        cache: CacheService,
        provider_timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        cache_version: Optional[int] = None,
        default_limit: Optional[int] = None,
        offers_ttl: Optional[int] = None,
    ):
        self.registry = registry
        self.budget_guard = budget_guard
        self.cache = cache
        self.provider_timeout = provider_timeout or settings.SEARCH_PROVIDER_TIMEOUT_SECONDS
        self.cache_ttl = cache_ttl or settings.SEARCH_CACHE_TTL_SECONDS
        self.cache_version = cache_version if cache_version is not None else settings.SEARCH_CACHE_VERSION
        self.default_limit = default_limit or settings.SEARCH_DEFAULT_LIMIT
        self.offers_ttl = offers_ttl or settings.PRODUCT_OFFERS_TTL_SECONDS
        self.logger = logger.bind(service="search_orchestrator")

    async def search(
        self,
        query: str,
        country: str = "US",
        providers: Optional[List[str]] = None,
        limit: Optional[int] = None,
        page: int = 1,
        cache_bust: bool = False,
        user_id: Optional[str] = None,
    ) -> SearchResponse:
        """Search products across providers.

        Args:
            query: Raw user query
            country: ISO country code
            providers: Provider names; None or ["auto"] selects the defaults
            limit: Maximum results per provider
            page: 1-based result page
            cache_bust: Skip cache reads and refresh from the providers
            user_id: Charge provider calls to this user's daily quota

        Returns:
            SearchResponse with merged items and one outcome per provider

        Raises:
            ValueError: If the query is empty after normalization
        """
        normalized = normalize_query(query)
        if not normalized:
            raise ValueError("query must not be empty")

        country = (country or "US").upper()
        limit = limit or self.default_limit
        page = max(page or 1, 1)
        names = self.registry.resolve(providers)
        cache_state = _CacheState()

        gathered = await asyncio.gather(
            *(
                self._search_provider(name, normalized, country, limit, page, cache_state, cache_bust, user_id)
                for name in names
            )
        )

        outcomes = [outcome for outcome, _ in gathered]
        items: List[SearchResult] = []
        seen_urls = set()
        for _, results in gathered:
            for item in results:
                if item.url in seen_urls:
                    continue
                seen_urls.add(item.url)
                items.append(item)

        answered = any(o.status in ANSWERED for o in outcomes)
        if not answered and cache_state.down:
            status = "unavailable"
        elif any(o.status not in ANSWERED for o in outcomes):
            status = "partial"
        else:
            status = "ok"

        self.logger.info(
            "search_completed",
            query=normalized,
            country=country,
            page=page,
            status=status,
            items=len(items),
            providers={o.provider: o.status for o in outcomes},
        )
        return SearchResponse(
            query=query,
            normalized_query=normalized,
            country=country,
            page=page,
            status=status,
            items=items,
            providers=outcomes,
        )

    async def _search_provider(
        self,
        name: str,
        normalized: str,
        country: str,
        limit: int,
        page: int,
        cache_state: _CacheState,
        cache_bust: bool = False,
        user_id: Optional[str] = None,
    ) -> Tuple[ProviderOutcome, List[SearchResult]]:
        provider = self.registry.get(name)
        if provider is None:
            return ProviderOutcome(provider=name, status="unknown", error="unknown provider"), []

        key = search_cache_key(name, country, normalized, limit=limit, page=page, version=self.cache_version)
        cached = None
        if not cache_bust:
            try:
                cached = await self.cache.get_json(key)
            except CacheUnavailable:
                cache_state.down = True

        if isinstance(cached, list):
            results = [SearchResult.model_validate(item) for item in cached[:limit]]
            return ProviderOutcome(provider=name, status="cached", count=len(results), cached=True), results

        if not provider.is_configured:
            return ProviderOutcome(provider=name, status="not_configured"), []

        try:
            async with self.budget_guard.reservation(name, user_id=user_id):
                payload = await asyncio.wait_for(
                    provider.search(normalized, country, limit, page),
                    timeout=self.provider_timeout,
                )
        except UserQuotaExceeded as e:
            return ProviderOutcome(provider=name, status="skipped_user_quota", error=e.message), []
        except BudgetExhausted:
            return ProviderOutcome(provider=name, status="skipped_budget"), []
        except asyncio.TimeoutError:
            self.logger.warning("provider_timed_out", provider=name, timeout=self.provider_timeout)
            return ProviderOutcome(provider=name, status="timeout", error="provider timed out"), []
        except FetchError as e:
            self.logger.warning("provider_failed", provider=name, error=e.message)
            return ProviderOutcome(provider=name, status="error", error=e.message), []
        except Exception as e:
            self.logger.error("provider_crashed", provider=name, error=str(e), exc_info=True)
            return ProviderOutcome(provider=name, status="error", error=str(e)), []

        try:
            results = provider.normalize(payload, limit)
        except Exception as e:
            self.logger.error("provider_normalize_failed", provider=name, error=str(e), exc_info=True)
            return ProviderOutcome(provider=name, status="error", error="unreadable provider response"), []

        # Empty answers are not cached so a transient miss is retried next time
        if results and not cache_state.down:
            try:
                await self.cache.set_json(
                    key,
                    [item.model_dump(mode="json") for item in results],
                    ttl=self.cache_ttl,
                )
            except CacheUnavailable:
                cache_state.down = True

        status = "ok" if results else "empty"
        return ProviderOutcome(provider=name, status=status, count=len(results)), results

    async def flush(
        self,
        queries: List[str],
        providers: Optional[List[str]] = None,
        countries: Optional[List[str]] = None,
        limits: Optional[List[int]] = None,
        pages: Optional[List[int]] = None,
    ) -> FlushCacheResponse:
        """Delete cached searches by recomputing their keys.

        Keys are rebuilt for every combination of provider, country, limit
        (default: the default limit) and page (default: page 1).

        Raises:
            CacheUnavailable: If the cache cannot be reached
        """
        provider_names = [p.strip().lower() for p in providers or self.registry.names() if p.strip()]
        country_codes = [c.strip().upper() for c in countries or ["US"] if c.strip()]
        limit_values = limits or [self.default_limit]
        page_values = pages or [1]

        keys = []
        for query in queries:
            normalized = normalize_query(query)
            if not normalized:
                continue
            for provider in provider_names:
                for country in country_codes:
                    for limit in limit_values:
                        for page in page_values:
                            keys.append(search_cache_key(
                                provider, country, normalized, limit=limit, page=page, version=self.cache_version,
                            ))

        deleted = await self.cache.delete_many(keys)
        self.logger.info("search_cache_flushed", queries=len(queries), keys=len(keys), deleted=deleted)
        return FlushCacheResponse(keys_checked=len(keys), keys_deleted=deleted)

    async def get_product_offers(self, page_token: str) -> ProductOffersResponse:
        """Merchant offers for one product, cache-first, charged to the google budget."""
        if not page_token or not page_token.strip():
            raise ValueError("page_token must not be empty")

        key = product_offers_key(page_token)
        cache_down = False
        try:
            cached: Any = await self.cache.get_json(key)
        except CacheUnavailable:
            cache_down = True
            cached = None
        if isinstance(cached, list):
            return ProductOffersResponse(status="ok", cached=True, offers=cached)

        provider = self.registry.get(OFFERS_PROVIDER)
        if provider is None or not provider.is_configured or not hasattr(provider, "product_offers"):
            return ProductOffersResponse(status="not_configured")

        try:
            async with self.budget_guard.reservation(OFFERS_PROVIDER):
                offers = await asyncio.wait_for(
                    provider.product_offers(page_token),
                    timeout=self.provider_timeout,
                )
        except BudgetExhausted:
            return ProductOffersResponse(status="skipped_budget")
        except asyncio.TimeoutError:
            return ProductOffersResponse(status="unavailable" if cache_down else "timeout")
        except FetchError as e:
            self.logger.warning("product_offers_failed", error=e.message)
            return ProductOffersResponse(status="unavailable" if cache_down else "error")

        if offers and not cache_down:
            try:
                await self.cache.set_json(
                    key,
                    [offer.model_dump(mode="json") for offer in offers],
                    ttl=self.offers_ttl,
                )
            except CacheUnavailable:
                self.logger.warning("product_offers_cache_write_failed")

        return ProductOffersResponse(status="ok", offers=offers)

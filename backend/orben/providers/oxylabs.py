"""Oxylabs realtime scraper providers: Amazon structured search and eBay HTML."""

from typing import Any, Dict, List
from urllib.parse import quote_plus

import httpx

from orben.config import settings
from orben.core.exceptions import FetchError
from orben.providers.base import BaseProvider
from orben.providers.normalize import normalize_ebay_html, normalize_oxylabs_amazon
from orben.schemas.search import SearchResult


OXYLABS_URL = "https://realtime.oxylabs.io/v1/queries"

# Oxylabs amazon_search domain per country
AMAZON_DOMAINS = {"US": "com", "GB": "co.uk", "CA": "ca", "DE": "de", "FR": "fr", "AU": "com.au"}


class _OxylabsProvider(BaseProvider):

    def __init__(self, http_client=None, username: str | None = None, password: str | None = None):
        super().__init__(http_client)
        self.username = username if username is not None else settings.OXYLABS_USERNAME
        self.password = password if password is not None else settings.OXYLABS_PASSWORD

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    async def _query(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            OXYLABS_URL,
            json=body,
            auth=httpx.BasicAuth(self.username, self.password),
        )
        payload = self._json(response, self.name)
        job_status = (payload.get("job") or {}).get("status")
        if job_status == "faulted":
            raise FetchError(self.name, "oxylabs job faulted", retryable=True)
        return payload


class OxylabsAmazonProvider(_OxylabsProvider):
    """Amazon search results via the ``amazon_search`` source (parsed)."""

    name = "oxylabs"

    async def search(self, query: str, country: str, limit: int, page: int = 1) -> Dict[str, Any]:
        return await self._query({
            "source": "amazon_search",
            "query": query,
            "domain": AMAZON_DOMAINS.get(country.upper(), "com"),
            "start_page": max(page, 1),
            "pages": 1,
            "parse": True,
            "context": [{"key": "category_id", "value": "aps"}],
        })

    def normalize(self, payload: Any, limit: int) -> List[SearchResult]:
        return normalize_oxylabs_amazon(payload, limit, provider=self.name)


class EbayProvider(_OxylabsProvider):
    """eBay search pages via the Oxylabs ``universal`` source (raw HTML)."""

    name = "ebay"

    async def search(self, query: str, country: str, limit: int, page: int = 1) -> str:
        url = (
            f"https://www.ebay.com/sch/i.html?_nkw={quote_plus(query)}"
            f"&_ipg={min(limit, 50)}&_pgn={max(page, 1)}"
        )
        payload = await self._query({"source": "universal", "url": url, "parse": False})
        results = payload.get("results") or []
        if not results:
            return ""
        return (results[0] or {}).get("content") or ""

    def normalize(self, payload: Any, limit: int) -> List[SearchResult]:
        return normalize_ebay_html(payload if isinstance(payload, str) else "", limit, provider=self.name)

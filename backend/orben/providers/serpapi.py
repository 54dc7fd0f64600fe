"""Google Shopping search through SerpAPI."""

from typing import Any, Dict, List

from orben.config import settings
from orben.providers.base import BaseProvider
from orben.providers.normalize import normalize_serpapi, normalize_serpapi_offers
from orben.schemas.search import ProductOffer, SearchResult


SERPAPI_URL = "https://serpapi.com/search.json"


class GoogleShoppingProvider(BaseProvider):
    """SerpAPI ``engine=google`` search, preferring shopping blocks."""

    name = "google"

    def __init__(self, http_client=None, api_key: str | None = None):
        super().__init__(http_client)
        self.api_key = api_key if api_key is not None else settings.SERPAPI_KEY

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, country: str, limit: int, page: int = 1) -> Dict[str, Any]:
        num = min(max(limit, 1), 100)
        params = {
            "engine": "google",
            "q": query,
            "hl": "en",
            "gl": country.lower(),
            "api_key": self.api_key,
            "num": num,
            "start": (max(page, 1) - 1) * num,
        }
        response = await self._request("GET", SERPAPI_URL, params=params)
        payload = self._json(response, self.name)
        self.logger.info(
            "serpapi_search_completed",
            immersive=len(payload.get("immersive_products") or []),
            shopping=len(payload.get("shopping_results") or []),
            organic=len(payload.get("organic_results") or []),
        )
        return payload

    def normalize(self, payload: Any, limit: int) -> List[SearchResult]:
        return normalize_serpapi(payload, limit, provider=self.name)

    async def product_offers(self, page_token: str) -> List[ProductOffer]:
        """Merchant offers for one immersive product."""
        params = {
            "engine": "google_immersive_product",
            "page_token": page_token,
            "more_stores": "true",
            "api_key": self.api_key,
        }
        response = await self._request("GET", SERPAPI_URL, params=params)
        return normalize_serpapi_offers(self._json(response, self.name))

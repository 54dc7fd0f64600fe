"""Retailer JSON API fetcher with pagination and rate-limit awareness."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from orben.config import settings
from orben.core.exceptions import FetchError
from orben.ingestion.base import BaseFetcher, FetchResult, RawRecord
from orben.ingestion.registry import SourceSnapshot


DEFAULT_ITEM_KEYS = ("items", "deals", "products", "results", "data")


def dig(payload: Any, path: str) -> Any:
    """Follow a dotted path ("data.items") through nested dicts."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class APIFetcher(BaseFetcher):
    """Fetches deals from a paginated retailer JSON API.

    Source config keys:
        items_path: dotted path to the item list (auto-detected if absent)
        next_path: dotted path to the next-page URL (default "next")
        headers: extra request headers (e.g. API keys)
        max_pages: page cap, defaults to API_MAX_PAGES

    Pagination follows, in order, a next URL in the body, a Link
    ``rel="next"`` header, or a ``{page}`` placeholder in the endpoint.
    Paging stops early once ``X-RateLimit-Remaining`` reaches zero.
    """

    source_type = "api"

    async def fetch(self, source: SourceSnapshot) -> FetchResult:
        endpoint = self._require_endpoint(source)
        config = source.config or {}
        max_pages = int(config.get("max_pages") or settings.API_MAX_PAGES)
        headers = dict(config.get("headers") or {})
        templated = "{page}" in endpoint
        page = int(config.get("first_page", 1))

        url: Optional[str] = endpoint.replace("{page}", str(page)) if templated else endpoint
        records: List[RawRecord] = []
        skipped = 0
        pages = 0
        status: Optional[int] = None

        while url and pages < max_pages:
            response = await self._get_with_retry(source, url, headers=headers)
            status = response.status_code
            pages += 1
            fetched_at = datetime.now(timezone.utc)

            try:
                payload = response.json()
            except ValueError as e:
                raise FetchError(source.slug, f"invalid JSON: {e}", retryable=False, status_code=status) from e

            items = self._extract_items(payload, config.get("items_path"))
            if items is None:
                raise FetchError(source.slug, "response has no item list", retryable=False, status_code=status)

            for item in items:
                if not isinstance(item, dict):
                    skipped += 1
                    continue
                records.append(RawRecord(source_type=self.source_type, data=item, fetched_at=fetched_at))

            if self._rate_limit_exhausted(response):
                self.logger.warning("api_rate_limit_reached", source=source.slug, pages=pages)
                break
            if not items:
                break

            next_url = self._next_url(payload, response, config.get("next_path", "next"))
            if next_url:
                url = next_url
            elif templated:
                page += 1
                url = endpoint.replace("{page}", str(page))
            else:
                url = None

        return FetchResult(records=records, http_status=status, items_skipped=skipped, pages=pages)

    @staticmethod
    def _extract_items(payload: Any, items_path: Optional[str]) -> Optional[List[Any]]:
        if items_path:
            items = dig(payload, items_path)
            return items if isinstance(items, list) else None
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in DEFAULT_ITEM_KEYS:
                if isinstance(payload.get(key), list):
                    return payload[key]
        return None

    @staticmethod
    def _next_url(payload: Any, response: httpx.Response, next_path: str) -> Optional[str]:
        if isinstance(payload, dict):
            candidate = dig(payload, next_path)
            if isinstance(candidate, str) and candidate:
                return str(response.url.join(candidate))
        link = response.links.get("next", {}).get("url")
        if link:
            return str(response.url.join(link))
        return None

    @staticmethod
    def _rate_limit_exhausted(response: httpx.Response) -> bool:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return False
        try:
            return int(remaining) <= 0
        except ValueError:
            return False

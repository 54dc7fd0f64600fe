"""Affiliate product feed fetcher (Google Merchant style RSS)."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import feedparser

from orben.core.exceptions import FetchError
from orben.ingestion.base import BaseFetcher, FetchResult, RawRecord
from orben.ingestion.fetchers.rss import entry_html, extract_image, html_to_text, struct_to_datetime
from orben.ingestion.registry import SourceSnapshot


def _first(entry: Any, *keys: str) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if value:
            return str(value).strip()
    return None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 (Google Merchant) or RFC 822 dates."""
    if not value:
        return None
    # sale_price_effective_date is a "start/end" range
    value = value.split("/")[-1].strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AffiliateFeedFetcher(BaseFetcher):
    """Fetches affiliate network product feeds.

    Items carry structured ``g:`` fields (price, sale_price, image_link,
    brand, product_type, expiration_date); feedparser exposes them with a
    ``g_`` prefix.
    """

    source_type = "affiliate"

    async def fetch(self, source: SourceSnapshot) -> FetchResult:
        url = self._require_endpoint(source)
        response = await self._get_with_retry(source, url)
        fetched_at = datetime.now(timezone.utc)

        parsed = feedparser.parse(response.content)
        if parsed.bozo and not parsed.entries:
            raise FetchError(
                source.slug,
                f"parse error: {parsed.get('bozo_exception')!r}",
                retryable=False,
                status_code=response.status_code,
            )

        records: List[RawRecord] = []
        skipped = 0
        for entry in parsed.entries:
            data = self._entry_to_dict(entry)
            if data is None:
                skipped += 1
                continue
            records.append(RawRecord(source_type=self.source_type, data=data, fetched_at=fetched_at))

        if skipped:
            self.logger.warning("feed_entries_skipped", source=source.slug, skipped=skipped)

        return FetchResult(records=records, http_status=response.status_code, items_skipped=skipped)

    def _entry_to_dict(self, entry: Any) -> Optional[Dict[str, Any]]:
        title = _first(entry, "title", "g_title")
        link = _first(entry, "link", "g_link")
        if not title or not link:
            return None

        html = entry_html(entry)
        sale_price = _first(entry, "g_sale_price", "sale_price")
        list_price = _first(entry, "g_price", "price")

        return {
            "guid": _first(entry, "g_id", "id") or link,
            "title": title,
            "link": link,
            # A sale price means the list price is the original
            "price": sale_price or list_price,
            "original_price": list_price if sale_price else None,
            "image_url": _first(entry, "g_image_link", "image_link") or extract_image(entry, html),
            "brand": _first(entry, "g_brand", "brand"),
            "product_type": _first(entry, "g_product_type", "g_google_product_category"),
            "summary": html_to_text(html),
            "published_at": struct_to_datetime(
                entry.get("published_parsed") or entry.get("updated_parsed")
            ),
            "expires_at": _parse_date(_first(entry, "g_expiration_date", "g_sale_price_effective_date")),
        }

"""RSS/Atom deal feed fetcher."""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
from bs4 import BeautifulSoup

from orben.core.exceptions import FetchError
from orben.ingestion.base import BaseFetcher, FetchResult, RawRecord
from orben.ingestion.registry import SourceSnapshot


DESCRIPTION_MAX_CHARS = 1000


def struct_to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def entry_html(entry: Any) -> str:
    """Best available HTML body for an entry."""
    content = entry.get("content") or []
    if content and content[0].get("value"):
        return content[0]["value"]
    return entry.get("summary") or entry.get("description") or ""


def extract_image(entry: Any, html: str) -> Optional[str]:
    """media:content, then media:thumbnail, then an image enclosure, then <img> in the body."""
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            url = media.get("url")
            if url:
                return url

    for enclosure in entry.get("enclosures") or []:
        href = enclosure.get("href") or enclosure.get("url")
        if href and (enclosure.get("type") or "image/").startswith("image/"):
            return href

    if html:
        img = BeautifulSoup(html, "html.parser").find("img", src=True)
        if img:
            return img["src"]
    return None


def html_to_text(html: str) -> Optional[str]:
    if not html:
        return None
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    return text[:DESCRIPTION_MAX_CHARS] or None


class RSSFetcher(BaseFetcher):
    """Fetches deal aggregator RSS/Atom feeds.

    Malformed XML is tolerated: feedparser recovers what it can and entries
    without a title or link are skipped. Only a document that yields no
    entries at all *and* fails to parse is a fetch failure.
    """

    source_type = "rss"

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
        if parsed.bozo:
            self.logger.warning(
                "feed_partially_malformed",
                source=source.slug,
                error=str(parsed.get("bozo_exception")),
                entries=len(records),
            )

        return FetchResult(records=records, http_status=response.status_code, items_skipped=skipped)

    def _entry_to_dict(self, entry: Any) -> Optional[Dict[str, Any]]:
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        if not title or not link:
            return None

        html = entry_html(entry)
        return {
            "guid": entry.get("id") or link,
            "title": title,
            "link": link,
            "summary": html_to_text(html),
            "image_url": extract_image(entry, html),
            "published_at": struct_to_datetime(
                entry.get("published_parsed") or entry.get("updated_parsed")
            ),
        }

"""Normalizer: maps raw source records to the canonical deal shape."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

from orben.core.exceptions import NormalizationError
from orben.ingestion.base import RawRecord
from orben.ingestion.fetchers.api import dig
from orben.ingestion.registry import SourceSnapshot, as_utc
from orben.ingestion.utils.normalizer import (
    CategoryClassifier,
    PriceNormalizer,
    discount_percentage,
    merchant_from_title,
)


TITLE_MAX_CHARS = 500
DEFAULT_CATEGORY = "general"

# Candidate keys for JSON API and manual records, first match wins
DEFAULT_FIELD_MAP: Dict[str, tuple] = {
    "title": ("title", "name"),
    "url": ("url", "link", "product_url", "deal_url"),
    "price": ("sale_price", "salePrice", "price", "current_price"),
    "original_price": ("original_price", "regular_price", "regularPrice", "list_price", "msrp"),
    "discount_percentage": ("discount_percentage", "percent_off"),
    "image_url": ("image_url", "image", "thumbnail"),
    "merchant": ("merchant", "store", "retailer"),
    "category": ("category",),
    "description": ("description", "summary"),
    "guid": ("external_id", "id", "sku", "guid"),
    "posted_at": ("posted_at", "published_at", "created_at"),
    "expires_at": ("expires_at", "expiration_date"),
    "votes": ("votes", "thumbs_up", "likes"),
    "comments": ("comments", "comment_count"),
    "shipping_price": ("shipping_price", "shipping"),
}


@dataclass
class CanonicalDeal:
    """Normalized deal produced for every source type."""

    title: str
    url: str
    price: Decimal
    merchant: str
    category: str
    posted_at: datetime
    source_id: Optional[uuid.UUID] = None
    source_name: Optional[str] = None
    source_item_id: Optional[str] = None
    original_price: Optional[Decimal] = None
    discount_percentage: Optional[int] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    signals: Dict[str, Any] = field(default_factory=dict)  # votes, comments, free_shipping

    def __post_init__(self):
        if not self.title:
            raise NormalizationError("title is required")
        if not self.url:
            raise NormalizationError("url is required")
        if self.price is None or self.price <= 0:
            raise NormalizationError("price must be a positive Decimal")
        if self.original_price is not None and self.original_price < 0:
            raise NormalizationError("original_price must be non-negative")
        if self.discount_percentage is not None and not 0 <= self.discount_percentage <= 100:
            raise NormalizationError("discount_percentage must be within 0-100")


def _pick(data: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = dig(data, key) if "." in key else data.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DealNormalizer:
    """Pure mapping from RawRecord to CanonicalDeal.

    Missing optional fields stay None. A record whose price cannot be
    parsed raises NormalizationError and is counted as an item failure.
    """

    def normalize(self, record: RawRecord, source: SourceSnapshot) -> CanonicalDeal:
        """Normalize one raw record.

        Args:
            record: Raw record from a fetcher or manual submission
            source: Source the record came from

        Returns:
            CanonicalDeal

        Raises:
            NormalizationError: If a required field is missing or the price is unusable
        """
        if not isinstance(record.data, Mapping):
            raise NormalizationError("record payload is not a mapping")

        if record.source_type in ("rss", "affiliate"):
            fields = self._from_feed(record.data)
        else:
            fields = self._from_structured(record.data, source)

        title = (fields.get("title") or "").strip()[:TITLE_MAX_CHARS]
        url = (fields.get("url") or "").strip()
        if not title:
            raise NormalizationError("record has no title")
        if not url.startswith(("http://", "https://")):
            raise NormalizationError(f"record has no usable url: {url!r}")

        price = fields.get("price")
        if price is None:
            raise NormalizationError(f"unparseable price for {title[:60]!r}")

        original_price = fields.get("original_price")
        if original_price is not None and original_price <= price:
            original_price = None

        discount = discount_percentage(price, original_price)
        if discount is None:
            discount = fields.get("discount_percentage")
            if discount is not None and not 0 < discount < 100:
                discount = None

        config = source.config or {}
        merchant = (
            fields.get("merchant")
            or merchant_from_title(title)
            or config.get("merchant")
            or source.name
        )
        description = fields.get("description")
        category = (
            fields.get("category")
            or CategoryClassifier.classify(title, description)
            or CategoryClassifier.classify(fields.get("category_hint") or "")
            or config.get("category")
            or DEFAULT_CATEGORY
        )

        guid = fields.get("guid")
        return CanonicalDeal(
            title=title,
            url=url,
            price=price,
            merchant=str(merchant).strip(),
            category=str(category).strip().lower(),
            posted_at=fields.get("posted_at") or as_utc(record.fetched_at),
            source_id=source.id,
            source_name=source.name,
            source_item_id=str(guid)[:500] if guid else None,
            original_price=original_price,
            discount_percentage=discount,
            image_url=fields.get("image_url"),
            description=description,
            expires_at=fields.get("expires_at"),
            signals=fields.get("signals") or {},
        )

    def _from_feed(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        title = data.get("title") or ""
        summary = data.get("summary") or ""

        if data.get("price") is not None:
            price = PriceNormalizer.coerce(data.get("price"))
            original = PriceNormalizer.coerce(data.get("original_price"))
        else:
            price, original = PriceNormalizer.extract_prices_from_text(title)
            summary_price, summary_original = PriceNormalizer.extract_prices_from_text(summary)
            price = price or summary_price
            original = original or summary_original

        text = f"{title} {summary}"
        signals = {}
        if "free shipping" in text.lower():
            signals["free_shipping"] = True

        return {
            "title": title,
            "url": data.get("link"),
            "price": price,
            "original_price": original,
            "discount_percentage": PriceNormalizer.extract_percent_off(text),
            "image_url": data.get("image_url"),
            "merchant": None,
            "category": None,
            "description": summary or None,
            # Merchant taxonomy ("Electronics > Audio > Headphones") and brand
            "category_hint": " ".join(filter(None, [data.get("product_type"), data.get("brand")])) or None,
            "guid": data.get("guid"),
            "posted_at": _parse_datetime(data.get("published_at")),
            "expires_at": _parse_datetime(data.get("expires_at")),
            "signals": signals,
        }

    def _from_structured(self, data: Mapping[str, Any], source: SourceSnapshot) -> Dict[str, Any]:
        config = source.config or {}
        field_map = dict(DEFAULT_FIELD_MAP)
        for name, path in (config.get("fields") or {}).items():
            field_map[name] = (path,) if isinstance(path, str) else tuple(path)

        cents = bool(config.get("price_in_cents"))
        if data.get("price_cents") is not None:
            price = PriceNormalizer.coerce(data.get("price_cents"), cents=True)
        else:
            price = PriceNormalizer.coerce(_pick(data, field_map["price"]), cents=cents)
        original = PriceNormalizer.coerce(_pick(data, field_map["original_price"]), cents=cents)

        signals: Dict[str, Any] = {}
        votes = _to_int(_pick(data, field_map["votes"]))
        if votes is not None:
            signals["votes"] = votes
        comments = _to_int(_pick(data, field_map["comments"]))
        if comments is not None:
            signals["comments"] = comments
        shipping = _pick(data, field_map["shipping_price"])
        if shipping is not None and PriceNormalizer.coerce(shipping) is None:
            # "Free", 0 and other non-positive shipping prices
            signals["free_shipping"] = str(shipping).strip().lower() in ("0", "0.0", "0.00", "free")

        raw_discount = _pick(data, field_map["discount_percentage"])
        discount = None
        if raw_discount is not None:
            discount = _to_int(PriceNormalizer.coerce(raw_discount))

        category = _pick(data, field_map["category"])
        return {
            "title": str(_pick(data, field_map["title"]) or ""),
            "url": str(_pick(data, field_map["url"]) or ""),
            "price": price,
            "original_price": original,
            "discount_percentage": discount,
            "image_url": _pick(data, field_map["image_url"]),
            "merchant": _pick(data, field_map["merchant"]),
            "category": str(category) if category else None,
            "description": _pick(data, field_map["description"]),
            "guid": _pick(data, field_map["guid"]),
            "posted_at": _parse_datetime(_pick(data, field_map["posted_at"])),
            "expires_at": _parse_datetime(_pick(data, field_map["expires_at"])),
            "signals": signals,
        }

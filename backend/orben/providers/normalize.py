"""Normalization of provider payloads into SearchResult rows.

The only module that knows what SerpAPI and Oxylabs responses look like.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from orben.ingestion.utils.normalizer import PriceNormalizer
from orben.schemas.search import ProductOffer, SearchResult


def _price(*candidates: Any) -> Optional[Decimal]:
    for value in candidates:
        price = PriceNormalizer.coerce(value)
        if price is not None:
            return price
    return None


def _float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _free_shipping(delivery: Any) -> bool:
    return isinstance(delivery, str) and "free" in delivery.lower()


def _host(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    host = urlparse(url).netloc
    return host[4:] if host.startswith("www.") else host or None


# ---------------------------------------------------------------------------
# SerpAPI (Google)
# ---------------------------------------------------------------------------

def _serpapi_product(product: Dict[str, Any], provider: str) -> Optional[SearchResult]:
    title = product.get("title")
    url = product.get("link") or product.get("product_link") or product.get("serpapi_link")
    if not title or not url:
        return None
    return SearchResult(
        title=title,
        url=url,
        price=_price(product.get("extracted_price"), product.get("price")),
        original_price=_price(
            product.get("extracted_original_price"),
            product.get("extracted_old_price"),
            product.get("old_price"),
        ),
        merchant=product.get("source") or product.get("seller") or _host(url) or "Unknown",
        image_url=product.get("thumbnail"),
        condition=product.get("second_hand_condition") or "New",
        free_shipping=_free_shipping(product.get("delivery")),
        rating=_float(product.get("rating")),
        reviews=_int(product.get("reviews") or product.get("reviews_count")),
        provider=provider,
        product_token=product.get("immersive_product_page_token"),
    )


def normalize_serpapi(payload: Dict[str, Any], limit: int, provider: str = "google") -> List[SearchResult]:
    """Immersive products, then shopping results, then inline shopping,
    then organic results that carry a price or thumbnail."""
    if not isinstance(payload, dict):
        return []

    candidates: Iterable[Dict[str, Any]] = []
    for key in ("immersive_products", "shopping_results", "inline_shopping_results"):
        if payload.get(key):
            candidates = payload[key]
            break
    else:
        candidates = [
            r for r in payload.get("organic_results") or []
            if isinstance(r, dict) and (r.get("price") or r.get("extracted_price") or r.get("thumbnail"))
        ]

    results = []
    for product in candidates:
        if not isinstance(product, dict):
            continue
        item = _serpapi_product(product, provider)
        if item is not None:
            results.append(item)
        if len(results) >= limit:
            break
    return results


def normalize_serpapi_offers(payload: Dict[str, Any]) -> List[ProductOffer]:
    """Merchant offers from a google_immersive_product response."""
    stores = ((payload or {}).get("product_results") or {}).get("stores") or []
    offers = []
    for store in stores:
        if not isinstance(store, dict):
            continue
        offers.append(ProductOffer(
            merchant=store.get("name") or "Unknown",
            price=_price(store.get("extracted_price"), store.get("price")),
            url=store.get("link"),
            shipping=store.get("shipping"),
            total_price=_price(store.get("extracted_total"), store.get("total")),
            rating=_float(store.get("rating")),
            reviews=_int(store.get("reviews")),
        ))
    return offers


# ---------------------------------------------------------------------------
# Oxylabs (Amazon structured results)
# ---------------------------------------------------------------------------

def normalize_oxylabs_amazon(payload: Dict[str, Any], limit: int, provider: str = "oxylabs") -> List[SearchResult]:
    results_list = (payload or {}).get("results") or []
    content = (results_list[0] or {}).get("content") if results_list else {}
    organic = ((content or {}).get("results") or {}).get("organic") or []

    results = []
    for item in organic:
        if not isinstance(item, dict) or not item.get("title") or not item.get("url"):
            continue
        url = item["url"]
        if url.startswith("/"):
            url = f"https://www.amazon.com{url}"
        results.append(SearchResult(
            title=item["title"],
            url=url,
            price=_price(item.get("price"), item.get("price_upper")),
            original_price=_price(item.get("price_strikethrough")),
            currency=item.get("currency") or "USD",
            merchant="Amazon",
            image_url=item.get("url_image") or item.get("thumbnail") or item.get("image"),
            condition="New",
            free_shipping=bool(item.get("is_prime")) or _free_shipping(item.get("shipping_information")),
            rating=_float(item.get("rating")),
            reviews=_int(item.get("reviews_count")),
            provider=provider,
        ))
        if len(results) >= limit:
            break
    return results


# ---------------------------------------------------------------------------
# eBay search result HTML (fetched through Oxylabs universal scraper)
# ---------------------------------------------------------------------------

def normalize_ebay_html(html: str, limit: int, provider: str = "ebay") -> List[SearchResult]:
    if not html:
        return []

    soup = BeautifulSoup(html, "html.parser")
    results = []
    for card in soup.select("li.s-item"):
        title_el = card.select_one(".s-item__title")
        link_el = card.select_one("a.s-item__link")
        price_el = card.select_one(".s-item__price")
        if not title_el or not link_el or not link_el.get("href"):
            continue

        title = title_el.get_text(" ", strip=True)
        if not title or title.lower().startswith("shop on ebay"):
            continue

        image_el = card.select_one("img.s-item__image-img") or card.select_one(".s-item__image img")
        condition_el = card.select_one(".SECONDARY_INFO")
        shipping_el = card.select_one(".s-item__shipping, .s-item__logisticsCost")

        # Price ranges ("$10.00 to $20.00") report the low end
        price_text = price_el.get_text(" ", strip=True) if price_el else ""
        results.append(SearchResult(
            title=title,
            url=link_el["href"],
            price=_price(price_text.split(" to ")[0]),
            merchant="eBay",
            image_url=(image_el.get("src") or image_el.get("data-src")) if image_el else None,
            condition=condition_el.get_text(strip=True) if condition_el else "Used",
            free_shipping=_free_shipping(shipping_el.get_text(" ", strip=True) if shipping_el else None),
            provider=provider,
        ))
        if len(results) >= limit:
            break
    return results

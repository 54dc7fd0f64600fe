"""Text, price and URL normalization helpers."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


TWO_PLACES = Decimal("0.01")

# Keyword-based category classifier for reseller categories
CATEGORY_KEYWORDS = {
    "electronics": [
        "headphones", "earbuds", "airpods", "speaker", "soundbar", "tv ", "oled",
        "monitor", "camera", "drone", "smartwatch", "kindle", "echo", "wh-1000",
    ],
    "computers": [
        "laptop", "macbook", "chromebook", "ipad", "tablet", "ssd", "nvme",
        "gpu", "rtx", "radeon", "ryzen", "intel ", "ram", "ddr5", "router",
    ],
    "phones": ["iphone", "galaxy s", "pixel", "smartphone", "phone case"],
    "gaming": [
        "playstation", "ps5", "xbox", "nintendo", "switch", "console",
        "controller", "steam deck", "video game",
    ],
    "tools": [
        "dewalt", "milwaukee", "makita", "ryobi", "drill", "impact driver",
        "tool set", "saw", "wrench",
    ],
    "toys-collectibles": [
        "lego", "funko", "pokemon", "trading card", "collectible", "action figure",
        "hot wheels", "vintage",
    ],
    "home": [
        "vacuum", "air fryer", "instant pot", "blender", "mattress", "coffee maker",
        "aquarium", "filter", "cookware", "furniture",
    ],
    "fashion": [
        "sneakers", "shoes", "jacket", "hoodie", "jeans", "handbag", "backpack",
        "nike", "adidas", "new balance", "watch",
    ],
}

# Query params that never identify the product
TRACKING_PARAMS = frozenset([
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "ref",
    "affiliate",
    "fbclid",
    "gclid",
    "mc_cid",
    "mc_eid",
])

_WHITESPACE_RE = re.compile(r"\s+")
_CURRENCY_RE = re.compile(r"(?i)\b(?:usd|us|eur|gbp|cad|aud)\b|[$€£¥₩]")
_AMOUNT = r"\d[\d,]*(?:\.\d{1,2})?"
_DOLLAR_RE = re.compile(r"\$\s?(" + _AMOUNT + r")")
_WAS_RE = re.compile(
    r"(?i)\b(?:was|reg\.?|regularly|regular|list|orig\.?|original|msrp)[:\s]*\$\s?(" + _AMOUNT + r")"
)
_PERCENT_OFF_RE = re.compile(r"(?i)(\d{1,2}(?:\.\d+)?)\s?%\s?off")
_PRICE_TOKEN_RE = re.compile(
    r"(?i)\(?\s*(?:(?:was|reg\.?|regularly|regular|list|orig\.?|original|msrp)[:\s]*)?\$\s?"
    + _AMOUNT + r"\s*\)?"
)
_MERCHANT_SUFFIX_RE = re.compile(r"\s(?:at|@)\s+([A-Z0-9][\w&'.\- ]{1,40}?)\s*$")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase and collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def strip_price_tokens(title: str) -> str:
    """Remove "$199" / "(was $349)" style tokens from a title."""
    stripped = _PRICE_TOKEN_RE.sub(" ", title or "")
    stripped = _WHITESPACE_RE.sub(" ", stripped)
    return stripped.strip(" -–—:|,")


def normalize_url(url: str) -> str:
    """Normalize a URL by removing tracking parameters and the fragment.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL, or the input unchanged if it is not parseable
    """
    if not url:
        return url

    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url

    if not parsed.scheme or not parsed.netloc:
        return url.strip()

    query = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ]
    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.params, urlencode(query), "")
    )


class PriceNormalizer:
    """Price parsing utilities.

    Everything ends up as a positive ``Decimal`` quantized to cents, or None.
    """

    @staticmethod
    def clean_price_string(raw: str) -> Optional[Decimal]:
        """Parse a price string and extract numeric value.

        Handles various formats:
        - "$12.99" -> 12.99
        - "USD 1,234.50" -> 1234.50
        - "1.234,56 €" -> 1234.56
        - "12,99" -> 12.99

        Args:
            raw: Raw price string

        Returns:
            Decimal price value, or None if parsing fails
        """
        if not raw:
            return None

        cleaned = _CURRENCY_RE.sub("", raw)
        cleaned = re.sub(r"[^\d.,\-]", "", cleaned)
        if not cleaned or cleaned.startswith("-"):
            return None

        if "," in cleaned and "." in cleaned:
            # Whichever separator comes last is the decimal point
            if cleaned.rfind(",") > cleaned.rfind("."):
                cleaned = cleaned.replace(".", "").replace(",", ".")
            else:
                cleaned = cleaned.replace(",", "")
        elif "," in cleaned:
            head, _, tail = cleaned.rpartition(",")
            if len(tail) == 2 and "," not in head:
                cleaned = f"{head}.{tail}"
            else:
                cleaned = cleaned.replace(",", "")
        elif cleaned.count(".") > 1:
            cleaned = cleaned.replace(".", "")

        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None

    @classmethod
    def coerce(cls, value: Any, cents: bool = False) -> Optional[Decimal]:
        """Coerce any price representation to a 2-place Decimal.

        Args:
            value: str, int, float or Decimal
            cents: Treat integers as minor units (1999 -> 19.99)

        Returns:
            Positive Decimal, or None when the value is not a usable price
        """
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, int):
            amount = Decimal(value)
            if cents:
                amount = amount / 100
        elif isinstance(value, float):
            amount = Decimal(repr(value))
        elif isinstance(value, str):
            amount = cls.clean_price_string(value)
            if amount is not None and cents and amount == amount.to_integral_value():
                amount = amount / 100
        else:
            return None

        if amount is None or not amount.is_finite() or amount <= 0:
            return None
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    @staticmethod
    def extract_prices_from_text(text: str) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        """Pull (price, original_price) out of free text like a deal headline.

        The first dollar amount that is not part of a "was $X" phrase is the
        price; the "was" amount is the original price.

        Args:
            text: Headline and/or summary

        Returns:
            Tuple of (price, original_price); either may be None
        """
        if not text:
            return None, None

        original = None
        was_spans = []
        for match in _WAS_RE.finditer(text):
            was_spans.append(match.span())
            if original is None:
                original = PriceNormalizer.coerce(match.group(1))

        price = None
        for match in _DOLLAR_RE.finditer(text):
            start = match.start()
            if any(lo <= start < hi for lo, hi in was_spans):
                continue
            price = PriceNormalizer.coerce(match.group(1))
            if price is not None:
                break

        return price, original

    @staticmethod
    def extract_percent_off(text: str) -> Optional[int]:
        if not text:
            return None
        match = _PERCENT_OFF_RE.search(text)
        if not match:
            return None
        value = Decimal(match.group(1)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(value) if 0 < value < 100 else None


def discount_percentage(price: Decimal, original_price: Optional[Decimal]) -> Optional[int]:
    """Whole-number percent saved, or None if there is no real discount."""
    if original_price is None or original_price <= price:
        return None
    pct = (original_price - price) / original_price * 100
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def merchant_from_title(title: str) -> Optional[str]:
    """Extract "Amazon" from headlines like "Echo Dot $19 at Amazon"."""
    if not title:
        return None
    match = _MERCHANT_SUFFIX_RE.search(strip_price_tokens(title))
    if not match:
        return None
    return match.group(1).strip() or None


class CategoryClassifier:
    """Keyword-based category classification for deal titles."""

    @staticmethod
    def classify(title: str, description: Optional[str] = None) -> Optional[str]:
        """Classify a deal into a category based on title keywords.

        Args:
            title: Deal title
            description: Optional summary, counted with half weight

        Returns:
            Category slug (e.g., "gaming") or None
        """
        if not title:
            return None

        title_lower = f" {title.lower()} "
        desc_lower = f" {description.lower()} " if description else ""
        scores = {}

        for cat_slug, keywords in CATEGORY_KEYWORDS.items():
            score = 0.0
            for kw in keywords:
                if kw in title_lower:
                    score += 1
                elif desc_lower and kw in desc_lower:
                    score += 0.5
            if score > 0:
                scores[cat_slug] = score

        if scores:
            return max(scores, key=scores.get)

        return None

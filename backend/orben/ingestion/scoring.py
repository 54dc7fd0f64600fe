"""Reseller-value deal scoring.

``score(deal)`` is a pure, deterministic function of the canonical deal:
no I/O, no clock, no randomness. Each component reads one signal and a
missing or malformed signal contributes 0, so scoring never raises.

Components (defaults from ScoringPolicy):
    - merchant:     reputation tier of the merchant (0-20)
    - discount:     depth of discount off original price (0-25)
    - hot_keywords: high-demand reseller keywords in title/description (0-15)
    - category:     sell-through expectation of the category (0-10)
    - velocity:     community votes/comments when the source reports them (0-15)
    - shipping:     free shipping (0-5)
    - urgency:      limited-time language (0-5)
    - condition:    refurb/used penalty unless collectible (-5-0)
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple


MIN_SCORE = 0
MAX_SCORE = 100

_REFURB_RE = re.compile(r"\b(refurb|refurbished|used|open box|open-box|renewed)\b", re.IGNORECASE)
_COLLECTIBLE_RE = re.compile(r"\b(collectible|vintage|rare)\b", re.IGNORECASE)
_URGENCY_RE = re.compile(r"limited time|flash|lightning|today only", re.IGNORECASE)
_FREE_SHIPPING_RE = re.compile(r"free shipping", re.IGNORECASE)


@dataclass(frozen=True)
class ScoringPolicy:
    """Tunable weights. Business tuning lives here, not in the scorer."""

    merchant_tiers: Mapping[str, int] = field(default_factory=lambda: {
        "amazon": 20, "walmart": 20, "best buy": 20, "bestbuy": 20, "target": 20,
        "home depot": 20, "lowes": 20, "bhphoto": 20, "b&h": 20, "newegg": 20,
        "costco": 20, "sams club": 20,
        "ebay": 10, "woot": 10, "kohls": 10, "macys": 10, "gamestop": 10,
    })
    # (minimum discount %, points), cumulative
    discount_steps: Tuple[Tuple[int, int], ...] = ((30, 10), (50, 10), (70, 5))
    hot_keywords: Tuple[str, ...] = (
        "console", "gpu", "rtx", "iphone", "macbook", "ipad", "airpods",
        "camera", "lego", "nintendo", "playstation", "xbox", "switch",
        "drone", "tools", "dewalt", "milwaukee", "makita", "ryobi",
        "collectible", "funko", "trading card", "pokemon", "vintage",
    )
    hot_keyword_points: int = 5
    hot_keyword_cap: int = 15
    category_points: Mapping[str, int] = field(default_factory=lambda: {
        "gaming": 10, "toys-collectibles": 10, "tools": 8, "computers": 8,
        "phones": 8, "electronics": 6, "fashion": 4, "home": 3,
    })
    # (minimum votes, points), highest match wins
    vote_steps: Tuple[Tuple[int, int], ...] = ((100, 10), (25, 6), (5, 3))
    comment_steps: Tuple[Tuple[int, int], ...] = ((50, 5), (10, 2))
    refurb_penalty: int = -5
    free_shipping_points: int = 5
    urgency_points: int = 5


DEFAULT_POLICY = ScoringPolicy()


@dataclass
class DealScore:
    """Result of scoring a deal.

    Attributes:
        score: Final clamped score (0-100)
        components: Contribution of each signal before clamping
    """

    score: int
    components: Dict[str, int]


def _get(deal: Any, name: str) -> Any:
    if isinstance(deal, Mapping):
        return deal.get(name)
    return getattr(deal, name, None)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _effective_discount(deal: Any) -> Optional[Decimal]:
    price = _as_decimal(_get(deal, "price"))
    original = _as_decimal(_get(deal, "original_price"))
    if price is not None and original is not None and original > 0 and price < original:
        return (original - price) / original * 100
    return _as_decimal(_get(deal, "discount_percentage"))


def _step_points(value: float, steps) -> int:
    for threshold, points in steps:
        if value >= threshold:
            return points
    return 0


def score_breakdown(deal: Any, policy: ScoringPolicy = DEFAULT_POLICY) -> DealScore:
    """Score a deal and report each component.

    Args:
        deal: CanonicalDeal, Deal row or mapping with canonical field names
        policy: Scoring weights

    Returns:
        DealScore with the clamped total and raw components
    """
    title = str(_get(deal, "title") or "")
    description = str(_get(deal, "description") or "")
    merchant = str(_get(deal, "merchant") or "").lower()
    category = str(_get(deal, "category") or "").lower()
    signals = _get(deal, "signals")
    if not isinstance(signals, Mapping):
        signals = {}
    content = f"{title} {description}".lower()

    components: Dict[str, int] = {}

    components["merchant"] = max(
        (points for name, points in policy.merchant_tiers.items() if name in merchant),
        default=0,
    )

    discount = _effective_discount(deal)
    components["discount"] = (
        sum(points for threshold, points in policy.discount_steps if discount >= threshold)
        if discount is not None else 0
    )

    matches = sum(1 for kw in policy.hot_keywords if kw in content)
    components["hot_keywords"] = min(policy.hot_keyword_cap, matches * policy.hot_keyword_points)

    components["category"] = policy.category_points.get(category, 0)

    components["velocity"] = (
        _step_points(_as_int(signals.get("votes")), policy.vote_steps)
        + _step_points(_as_int(signals.get("comments")), policy.comment_steps)
    )

    free_shipping = signals.get("free_shipping") is True or bool(_FREE_SHIPPING_RE.search(content))
    components["shipping"] = policy.free_shipping_points if free_shipping else 0

    components["urgency"] = policy.urgency_points if _URGENCY_RE.search(content) else 0

    refurb = _REFURB_RE.search(content) and not _COLLECTIBLE_RE.search(content)
    components["condition"] = policy.refurb_penalty if refurb else 0

    total = sum(components.values())
    return DealScore(score=max(MIN_SCORE, min(MAX_SCORE, total)), components=components)


def score(deal: Any, policy: ScoringPolicy = DEFAULT_POLICY) -> int:
    """Reseller-value score in [0, 100]. Total and deterministic."""
    return score_breakdown(deal, policy).score

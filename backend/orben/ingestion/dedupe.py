"""Deduplication: deal fingerprints and insert/update/discard decisions."""

import enum
import hashlib
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Set

from orben.ingestion.utils.normalizer import normalize_text, normalize_url, strip_price_tokens


# Upper bounds of the coarse price bands
PRICE_BANDS = (
    (Decimal("20"), "<20"),
    (Decimal("50"), "20-50"),
    (Decimal("100"), "50-100"),
    (Decimal("200"), "100-200"),
)

# Fields whose change turns a re-sighting into an in-place update
COMPARED_FIELDS = (
    "price",
    "original_price",
    "discount_percentage",
    "score",
    "title",
    "category",
    "image_url",
)


def price_bucket(price: Optional[Decimal]) -> str:
    if price is None:
        return "noprice"
    for upper, label in PRICE_BANDS:
        if price < upper:
            return label
    return "200+"


def compute_fingerprint(title: str, url: str, merchant: str, price: Optional[Decimal]) -> str:
    """sha256 of normalized title, url, merchant and price band.

    Price tokens are removed from the title first so a price change
    announced in the headline still maps to the same deal.
    """
    base = "|".join([
        normalize_text(strip_price_tokens(title)),
        normalize_url(url or ""),
        normalize_text(merchant),
        price_bucket(price),
    ])
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def fingerprint_deal(deal: Any) -> str:
    return compute_fingerprint(deal.title, deal.url, deal.merchant, deal.price)


class DedupeAction(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DISCARD = "discard"


@dataclass
class DedupeDecision:
    action: DedupeAction
    changes: Dict[str, Any] = field(default_factory=dict)


def _differs(old: Any, new: Any) -> bool:
    if isinstance(old, Decimal) or isinstance(new, Decimal):
        if old is None or new is None:
            return old is not new
        return Decimal(str(old)) != Decimal(str(new))
    return old != new


class Deduplicator:
    """Decides what to do with each fingerprinted deal in one run.

    A Deduplicator lives for exactly one ingestion run: the second item in a
    run with an already-seen fingerprint is discarded regardless of order,
    so a feed listing the same deal twice yields one write.
    """

    def __init__(self):
        self._seen: Set[str] = set()

    def seen(self, fingerprint: str) -> bool:
        return fingerprint in self._seen

    def decide(
        self,
        fingerprint: str,
        candidate: Dict[str, Any],
        existing: Optional[Any],
    ) -> DedupeDecision:
        """Choose insert, update-in-place or discard.

        Args:
            fingerprint: Fingerprint of the candidate deal
            candidate: Canonical field values for the candidate
            existing: Stored active deal with this fingerprint, if any

        Returns:
            DedupeDecision; ``changes`` holds the fields to write on update
        """
        if fingerprint in self._seen:
            return DedupeDecision(DedupeAction.DISCARD)
        self._seen.add(fingerprint)

        if existing is None:
            return DedupeDecision(DedupeAction.INSERT, dict(candidate))

        changes = {
            name: candidate.get(name)
            for name in COMPARED_FIELDS
            if name in candidate and _differs(getattr(existing, name, None), candidate.get(name))
        }
        if not changes:
            return DedupeDecision(DedupeAction.DISCARD)
        return DedupeDecision(DedupeAction.UPDATE, changes)

"""Universal product search schemas."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SearchResult(BaseModel):
    """One normalized product result from any provider."""

    title: str
    url: str
    price: Optional[Decimal] = None
    original_price: Optional[Decimal] = None
    currency: str = "USD"
    merchant: str = "Unknown"
    image_url: Optional[str] = None
    condition: Optional[str] = None
    free_shipping: bool = False
    rating: Optional[float] = None
    reviews: Optional[int] = None
    provider: str
    product_token: Optional[str] = None  # immersive product page token for offers lookup


class ProviderOutcome(BaseModel):
    """What happened with one provider for one search."""

    provider: str
    # "cached", "ok", "empty", "skipped_budget", "skipped_user_quota",
    # "not_configured", "error", "timeout" or "unknown"
    status: str
    count: int = 0
    cached: bool = False
    error: Optional[str] = None


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=300)
    country: str = Field("US", min_length=2, max_length=2)
    providers: Optional[List[str]] = None
    limit: Optional[int] = Field(None, ge=1, le=100)
    page: int = Field(1, ge=1, le=50)
    cache_bust: bool = False
    user_id: Optional[str] = Field(None, min_length=1, max_length=128)


class SearchResponse(BaseModel):
    """Merged search response.

    ``status`` is "ok", "partial" (some provider errored or was skipped)
    or "unavailable" (no provider answered and the cache is down), so an
    empty result list can be told apart from a broken search.
    """

    query: str
    normalized_query: str
    country: str
    page: int = 1
    status: str
    items: List[SearchResult] = []
    providers: List[ProviderOutcome] = []


class FlushCacheRequest(BaseModel):
    queries: List[str] = Field(..., min_length=1, max_length=500)
    providers: Optional[List[str]] = None
    countries: Optional[List[str]] = None
    limits: Optional[List[int]] = None
    pages: Optional[List[int]] = None


class FlushCacheResponse(BaseModel):
    keys_checked: int
    keys_deleted: int


class ProductOffer(BaseModel):
    merchant: str
    price: Optional[Decimal] = None
    url: Optional[str] = None
    shipping: Optional[str] = None
    total_price: Optional[Decimal] = None
    rating: Optional[float] = None
    reviews: Optional[int] = None


class ProductOffersResponse(BaseModel):
    status: str
    cached: bool = False
    offers: List[ProductOffer] = []
    extra: Dict[str, Any] = {}

"""Pydantic schemas for the manual deal submission endpoint."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class IngestDealItem(BaseModel):
    """A single manually submitted deal.

    Prices may be numbers or strings with currency symbols; the normalizer
    coerces them, and items it cannot parse are counted as failures.
    """

    title: str = Field(
        ...,
        min_length=1,
        max_length=500,
        examples=["Sony WH-1000XM4 Wireless Headphones"],
    )
    url: str = Field(..., min_length=1, max_length=2000, examples=["https://www.bestbuy.com/site/6408356"])
    price: float | str = Field(..., description="Deal price, e.g. 199.99 or \"$199.99\"")
    original_price: Optional[float | str] = Field(None, description="Pre-discount list price")
    merchant: Optional[str] = Field(None, max_length=200, examples=["Best Buy"])
    category: Optional[str] = Field(None, max_length=100, examples=["electronics"])
    image_url: Optional[str] = None
    description: Optional[str] = None
    external_id: Optional[str] = Field(None, max_length=500)
    posted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def drop_blank_strings(self) -> "IngestDealItem":
        for name in ("merchant", "category", "image_url", "description", "external_id"):
            value = getattr(self, name)
            if isinstance(value, str) and not value.strip():
                setattr(self, name, None)
        return self


class IngestRequest(BaseModel):
    """Payload for POST /api/v1/ingest/deals."""

    api_key: str = Field(..., min_length=1, description="Must match INGEST_API_KEY on the server")
    source_slug: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Slug of the source the deals are attributed to",
        examples=["manual"],
    )
    deals: List[IngestDealItem] = Field(..., min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class IngestStats(BaseModel):
    """Run counts for the submission."""

    received: int
    items_created: int
    items_updated: int
    items_discarded_duplicate: int
    items_failed: int


class IngestResponse(BaseModel):
    status: str = Field("success", description="'success' or 'failure' of the ingestion run")
    run_id: Optional[str] = None
    stats: IngestStats
    error: Optional[str] = None

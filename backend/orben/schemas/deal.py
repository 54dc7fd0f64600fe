"""Deal Pydantic schemas for responses and cached deal cards."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DealResponse(BaseModel):
    """Canonical deal as served by the feed and cached as a deal card."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: Optional[str] = None
    url: str
    image_url: Optional[str] = None
    price: Decimal
    original_price: Optional[Decimal] = None
    discount_percentage: Optional[int] = None
    merchant: str
    category: str
    source_id: Optional[UUID] = None
    score: int
    status: str
    posted_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None

"""Source and ingestion-run schemas for the operator API."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SourceResponse(BaseModel):
    """Source configuration and health."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    type: str
    endpoint: Optional[str] = None
    enabled: bool
    poll_interval_minutes: int
    last_polled_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    fail_count: int
    health: str
    config: Dict[str, Any] = {}


class SourceUpdateRequest(BaseModel):
    """Operator edit. Omitted fields are left unchanged."""

    enabled: Optional[bool] = None
    poll_interval_minutes: Optional[int] = Field(None, ge=1, le=60 * 24 * 7)
    endpoint: Optional[str] = Field(None, min_length=1, max_length=2000)


class IngestionRunResponse(BaseModel):
    """One row of the run ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_id: UUID
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[Decimal] = None
    items_fetched: int
    items_created: int
    items_updated: int
    items_discarded_duplicate: int
    items_failed: int
    error_message: Optional[str] = None
    http_status: Optional[int] = None

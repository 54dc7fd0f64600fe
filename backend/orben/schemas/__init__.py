"""Pydantic schemas for the Orben deals API."""

from orben.schemas.common import ApiResponse, ErrorDetail, ErrorResponse, PaginationMeta
from orben.schemas.deal import DealResponse
from orben.schemas.health import HealthCheckResponse, ProviderBudget, SourceHealthSummary
from orben.schemas.ingest import IngestDealItem, IngestRequest, IngestResponse, IngestStats
from orben.schemas.search import (
    FlushCacheRequest,
    FlushCacheResponse,
    ProductOffer,
    ProductOffersResponse,
    ProviderOutcome,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from orben.schemas.source import IngestionRunResponse, SourceResponse, SourceUpdateRequest

__all__ = [
    # Common
    "ApiResponse",
    "ErrorDetail",
    "ErrorResponse",
    "PaginationMeta",
    # Deal
    "DealResponse",
    # Source
    "SourceResponse",
    "SourceUpdateRequest",
    "IngestionRunResponse",
    # Search
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
    "ProviderOutcome",
    "FlushCacheRequest",
    "FlushCacheResponse",
    "ProductOffer",
    "ProductOffersResponse",
    # Ingest
    "IngestDealItem",
    "IngestRequest",
    "IngestResponse",
    "IngestStats",
    # Health
    "HealthCheckResponse",
    "ProviderBudget",
    "SourceHealthSummary",
]

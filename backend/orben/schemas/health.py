"""Health check schemas."""

from typing import Dict, List, Optional

from pydantic import BaseModel


class ProviderBudget(BaseModel):
    """Request budget of one search provider in the current window."""

    limit: int
    used: int
    held: int
    remaining: int


class SourceHealthSummary(BaseModel):
    """Counts of sources by state, plus the slugs needing attention."""

    enabled: int = 0
    degraded: List[str] = []
    failing: List[str] = []  # fail_count above the ceiling


class HealthCheckResponse(BaseModel):
    status: str
    database: str
    redis: Optional[str] = None
    scheduler: Optional[str] = None
    services: Dict[str, str] = {}
    sources: Optional[SourceHealthSummary] = None
    budgets: Dict[str, ProviderBudget] = {}

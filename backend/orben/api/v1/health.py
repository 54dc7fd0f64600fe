"""Health check endpoint."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orben.config import settings
from orben.core.exceptions import PersistenceError
from orben.dependencies import get_budget_guard, get_cache, get_db, get_store
from orben.ingestion.registry import DEGRADED
from orben.schemas import HealthCheckResponse, ProviderBudget, SourceHealthSummary
from orben.services.budget_guard import BudgetGuard
from orben.services.cache_service import CacheService
from orben.services.deal_store import DealStore

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _source_summary(store: DealStore) -> Optional[SourceHealthSummary]:
    try:
        sources = await store.list_sources()
    except PersistenceError as e:
        logger.warning("health_sources_unavailable", error=e.message)
        return None

    enabled = [s for s in sources if s.enabled]
    return SourceHealthSummary(
        enabled=len(enabled),
        degraded=[s.slug for s in enabled if s.health == DEGRADED],
        failing=[s.slug for s in enabled if (s.fail_count or 0) > settings.SOURCE_FAIL_CEILING],
    )


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    store: DealStore = Depends(get_store),
    budget_guard: BudgetGuard = Depends(get_budget_guard),
):
    """Report database, cache and scheduler state.

    Also lists degraded or failing sources and the remaining provider
    budgets. The service is "degraded" rather than down when only the
    cache is unreachable; degraded sources do not change the status.
    """
    try:
        (await db.execute(text("SELECT 1"))).scalar()
        db_status = "ok"
    except SQLAlchemyError as e:
        db_status = f"error: {e}"

    redis_status = "ok" if await cache.health_check() else "error: ping failed"

    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_status = "running" if scheduler is not None and scheduler.scheduler.running else "stopped"

    services = {"database": db_status, "redis": redis_status}
    snapshot = await budget_guard.snapshot()

    return HealthCheckResponse(
        status="ok" if all(s == "ok" for s in services.values()) else "degraded",
        database=db_status,
        redis=redis_status,
        scheduler=scheduler_status,
        services=services,
        sources=await _source_summary(store) if db_status == "ok" else None,
        budgets={name: ProviderBudget(**usage) for name, usage in snapshot.items()},
    )

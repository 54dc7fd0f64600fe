"""FastAPI dependency injection providers."""

import secrets
from typing import AsyncGenerator

import structlog
from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from orben.config import settings
from orben.db.session import async_session_factory
from orben.ingestion.pipeline import IngestionPipeline
from orben.services.budget_guard import BudgetGuard
from orben.services.cache_service import CacheService
from orben.services.deal_store import DealStore
from orben.services.feed_service import FeedService
from orben.services.search_service import SearchOrchestrator

logger = structlog.get_logger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for request-scoped usage.

    Only the health check uses a raw session; everything else goes
    through the DealStore.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Services are built once in the application lifespan and kept on app.state


def get_store(request: Request) -> DealStore:
    return request.app.state.store


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_feed_service(request: Request) -> FeedService:
    return request.app.state.feed_service


def get_search_orchestrator(request: Request) -> SearchOrchestrator:
    return request.app.state.search_orchestrator


def get_budget_guard(request: Request) -> BudgetGuard:
    return request.app.state.budget_guard


def get_cache(request: Request) -> CacheService:
    return request.app.state.cache


def verify_api_key(submitted_key: str) -> None:
    """Raise HTTP 403 if the submitted key does not match INGEST_API_KEY.

    Uses ``secrets.compare_digest`` to prevent timing attacks.

    Args:
        submitted_key: Key sent by the caller

    Raises:
        HTTPException: 403 Forbidden when the key is empty, not configured,
            or does not match.
    """
    configured_key: str = settings.INGEST_API_KEY

    # An unset key disables the guarded endpoints entirely
    if not configured_key:
        logger.warning("ingest_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Endpoint is disabled (INGEST_API_KEY not configured)",
        )

    if not submitted_key or not secrets.compare_digest(submitted_key.encode(), configured_key.encode()):
        logger.warning("ingest_api_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )


def require_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard for admin endpoints that take the key as a header."""
    verify_api_key(x_api_key)

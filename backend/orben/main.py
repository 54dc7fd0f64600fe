"""Orben Deals -- FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orben.api.v1.router import api_v1_router
from orben.config import settings
from orben.core.exceptions import CacheUnavailable, NotFoundError, OrbenException, PersistenceError
from orben.db.session import async_session_factory, engine
from orben.ingestion.factory import FetcherFactory, build_http_client, register_default_fetchers
from orben.ingestion.pipeline import IngestionPipeline
from orben.ingestion.scheduler import IngestionScheduler
from orben.models.base import Base
from orben.providers.factory import build_default_registry
from orben.schemas.common import ErrorDetail, ErrorResponse
from orben.services.budget_guard import get_budget_guard
from orben.services.cache_service import get_cache_service
from orben.services.deal_store import DealStore
from orben.services.feed_service import FeedService
from orben.services.search_service import SearchOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.DEBUG else logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    logger.info("app_starting", environment=settings.ENVIRONMENT, debug=settings.DEBUG)

    # Auto-create tables on startup (safe for fresh deployments)
    try:
        import orben.models  # noqa: F401  registers every model with Base.metadata

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_verified")
    except Exception as e:
        logger.error("database_init_failed", error=str(e), exc_info=True)

    # Initialize cache service (ensure connection is ready)
    cache = get_cache_service()
    if await cache.health_check():
        logger.info("redis_connected")
    else:
        logger.warning("redis_unavailable", detail="feed and search will run uncached")

    # One outbound client shared by fetchers and search providers
    http_client = build_http_client()
    fetcher_factory = register_default_fetchers(FetcherFactory(http_client=http_client))

    store = DealStore(async_session_factory)
    pipeline = IngestionPipeline(store, fetcher_factory=fetcher_factory, cache=cache)
    feed_service = FeedService(store, cache=cache)
    orchestrator = SearchOrchestrator(
        registry=build_default_registry(http_client),
        budget_guard=get_budget_guard(),
        cache=cache,
    )

    app.state.store = store
    app.state.pipeline = pipeline
    app.state.feed_service = feed_service
    app.state.search_orchestrator = orchestrator
    app.state.budget_guard = orchestrator.budget_guard
    app.state.cache = cache

    # Start ingestion scheduler (only in non-test environments)
    scheduler = None
    if settings.ENVIRONMENT != "test":
        scheduler = IngestionScheduler(store, pipeline, feed_service=feed_service)
        scheduler.start()
    else:
        logger.info("scheduler_disabled", reason="test environment")
    app.state.scheduler = scheduler

    yield

    # Shutdown
    logger.info("app_shutting_down")

    if scheduler:
        scheduler.stop()
        await scheduler.drain(timeout=settings.SCHEDULER_DRAIN_TIMEOUT_SECONDS)

    await http_client.aclose()
    await cache.close()
    await engine.dispose()


app = FastAPI(
    title="Orben Deals API",
    description="Deal ingestion feed and universal product search",
    version="0.1.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(404, "not_found", exc.message)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("request_store_unavailable", path=request.url.path, error=exc.message)
    return _error(503, "store_unavailable", "Deal store is unavailable")


@app.exception_handler(CacheUnavailable)
async def cache_error_handler(request: Request, exc: CacheUnavailable) -> JSONResponse:
    return _error(503, "cache_unavailable", exc.message)


@app.exception_handler(OrbenException)
async def orben_error_handler(request: Request, exc: OrbenException) -> JSONResponse:
    logger.error("request_failed", path=request.url.path, error=exc.message)
    return _error(500, "internal_error", exc.message)


# Register API v1 router
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Orben Deals API",
        "version": "0.1.0",
        "description": "Deal ingestion feed and universal product search",
        "docs": "/docs" if settings.DEBUG else None,
        "health": "/api/v1/health",
    }

"""API v1 router -- aggregates all v1 endpoint routers."""

from fastapi import APIRouter

from orben.api.v1 import deals, health, ingest, search, sources

api_v1_router = APIRouter()

api_v1_router.include_router(health.router, tags=["health"])
api_v1_router.include_router(deals.router, prefix="/deals", tags=["deals"])
api_v1_router.include_router(search.router, prefix="/search", tags=["search"])
api_v1_router.include_router(sources.router, prefix="/sources", tags=["sources"])
api_v1_router.include_router(ingest.router, prefix="/ingest", tags=["ingest"])

"""Universal product search API endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from orben.dependencies import get_search_orchestrator, require_api_key
from orben.schemas import (
    FlushCacheRequest,
    FlushCacheResponse,
    ProductOffersResponse,
    SearchRequest,
    SearchResponse,
)
from orben.services.search_service import SearchOrchestrator

router = APIRouter()


@router.post("", response_model=SearchResponse)
async def search(
    body: SearchRequest,
    orchestrator: SearchOrchestrator = Depends(get_search_orchestrator),
):
    """Search products across the requested providers.

    Each provider's outcome is reported separately; a slow, failing or
    over-budget provider never fails the whole search.
    """
    try:
        return await orchestrator.search(
            body.query,
            country=body.country,
            providers=body.providers,
            limit=body.limit,
            page=body.page,
            cache_bust=body.cache_bust,
            user_id=body.user_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post(
    "/flush-cache",
    response_model=FlushCacheResponse,
    dependencies=[Depends(require_api_key)],
)
async def flush_cache(
    body: FlushCacheRequest,
    orchestrator: SearchOrchestrator = Depends(get_search_orchestrator),
):
    """Delete cached results for the given queries (X-API-Key required)."""
    return await orchestrator.flush(
        body.queries,
        providers=body.providers,
        countries=body.countries,
        limits=body.limits,
        pages=body.pages,
    )


@router.get("/offers/{page_token}", response_model=ProductOffersResponse)
async def product_offers(
    page_token: str,
    orchestrator: SearchOrchestrator = Depends(get_search_orchestrator),
):
    """Merchant offers for one product returned by a google search."""
    try:
        return await orchestrator.get_product_offers(page_token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

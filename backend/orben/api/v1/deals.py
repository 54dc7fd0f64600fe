"""Deal feed API endpoints."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from orben.dependencies import get_feed_service
from orben.schemas import ApiResponse, DealResponse, PaginationMeta
from orben.services.feed_service import FeedService

router = APIRouter()


@router.get("/feed", response_model=ApiResponse[list[DealResponse]])
async def deal_feed(
    limit: int = Query(50, ge=1, le=100, description="Items per page"),
    offset: int = Query(0, ge=0, description="Items to skip"),
    search: Optional[str] = Query(None, max_length=200, description="Title substring"),
    merchant: Optional[str] = Query(None, description="Filter by merchant"),
    category: Optional[str] = Query(None, description="Filter by category"),
    min_score: Optional[int] = Query(None, ge=0, le=100, description="Minimum deal score"),
    feed: FeedService = Depends(get_feed_service),
):
    """Active deals, newest first, ties broken by score.

    Pages are cached until the next ingestion run changes the feed.
    """
    deals = await feed.get_feed(
        search=search,
        merchant=merchant,
        category=category,
        min_score=min_score,
        limit=limit,
        offset=offset,
    )
    return ApiResponse(
        data=deals,
        meta=PaginationMeta(limit=limit, offset=offset, count=len(deals)),
    )


@router.get("/{deal_id}", response_model=ApiResponse[DealResponse])
async def get_deal(
    deal_id: UUID,
    feed: FeedService = Depends(get_feed_service),
):
    """Single deal by ID. 404 when it does not exist."""
    return ApiResponse(data=await feed.get_deal(deal_id))

"""Source registry operator endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from orben.dependencies import get_store, require_api_key
from orben.schemas import ApiResponse, IngestionRunResponse, SourceResponse, SourceUpdateRequest
from orben.services.deal_store import DealStore

router = APIRouter()


@router.get("", response_model=ApiResponse[list[SourceResponse]])
async def list_sources(store: DealStore = Depends(get_store)):
    """Every registered source with its schedule and health."""
    sources = await store.list_sources()
    return ApiResponse(data=[SourceResponse.model_validate(s) for s in sources])


@router.patch(
    "/{source_id}",
    response_model=ApiResponse[SourceResponse],
    dependencies=[Depends(require_api_key)],
)
async def update_source(
    source_id: UUID,
    body: SourceUpdateRequest,
    store: DealStore = Depends(get_store),
):
    """Enable/disable a source, change its poll interval or endpoint."""
    source = await store.update_source(source_id, **body.model_dump(exclude_none=True))
    return ApiResponse(data=SourceResponse.model_validate(source))


@router.post(
    "/{source_id}/repoll",
    response_model=ApiResponse[SourceResponse],
    dependencies=[Depends(require_api_key)],
)
async def repoll_source(source_id: UUID, store: DealStore = Depends(get_store)):
    """Make the source due on the next scheduler tick."""
    source = await store.reset_last_polled(source_id)
    return ApiResponse(data=SourceResponse.model_validate(source))


@router.get("/{source_id}/runs", response_model=ApiResponse[list[IngestionRunResponse]])
async def list_runs(
    source_id: UUID,
    limit: int = Query(20, ge=1, le=200),
    store: DealStore = Depends(get_store),
):
    """Most recent ingestion runs for a source."""
    await store.get_source(source_id)
    runs = await store.list_runs(source_id, limit=limit)
    return ApiResponse(data=[IngestionRunResponse.model_validate(r) for r in runs])

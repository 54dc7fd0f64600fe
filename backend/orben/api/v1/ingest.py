"""Manual deal submission endpoint.

Operators and partner scripts POST deals here instead of exposing a feed.
The endpoint authenticates via a shared API key and then runs the batch
through the same Normalize -> Score -> Dedupe -> Persist pipeline the
scheduler uses, as one Ingestion Run of the named source.

The source's poll schedule and health are left untouched: a submission
is not a poll.

Security model
--------------
A single pre-shared key (``INGEST_API_KEY`` env var) is sent in the JSON
body and compared with ``secrets.compare_digest``.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from orben.dependencies import get_pipeline, get_store, verify_api_key
from orben.ingestion.base import RawRecord
from orben.ingestion.pipeline import IngestionPipeline
from orben.ingestion.registry import SourceSnapshot
from orben.models.base import utcnow
from orben.schemas.ingest import IngestRequest, IngestResponse, IngestStats
from orben.services.deal_store import DealStore

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post(
    "/deals",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit deals for a source",
    responses={
        403: {"description": "API key missing or incorrect"},
        404: {"description": "Unknown source slug"},
        422: {"description": "Request body validation failed or source disabled"},
    },
)
async def ingest_deals(
    body: IngestRequest,
    store: DealStore = Depends(get_store),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Accept a batch of deals attributed to an existing source.

    Each deal is individually error-isolated; an item that cannot be
    normalized is counted in ``items_failed`` and the rest of the batch
    continues.
    """
    verify_api_key(body.api_key)

    log = logger.bind(source_slug=body.source_slug, received=len(body.deals))
    log.info("ingest_request_received")

    source = SourceSnapshot.from_model(await store.get_source_by_slug(body.source_slug))
    if not source.enabled:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Source '{body.source_slug}' is disabled",
        )

    fetched_at = utcnow()
    records = [
        RawRecord(source_type="manual", data=item.model_dump(exclude_none=True), fetched_at=fetched_at)
        for item in body.deals
    ]

    outcome = await pipeline.execute(source, records=records, record_poll=False)

    log.info("ingest_request_completed", status=outcome.status, **outcome.stats)
    return IngestResponse(
        status=outcome.status,
        run_id=str(outcome.run_id) if outcome.run_id else None,
        stats=IngestStats(
            received=len(body.deals),
            items_created=outcome.stats["items_created"],
            items_updated=outcome.stats["items_updated"],
            items_discarded_duplicate=outcome.stats["items_discarded_duplicate"],
            items_failed=outcome.stats["items_failed"],
        ),
        error=outcome.error,
    )

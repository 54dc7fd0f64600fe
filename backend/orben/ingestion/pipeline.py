"""Ingestion pipeline: one run of Fetch -> Normalize -> Score -> Dedupe -> Persist.

This service connects the fetcher layer with the deal store. One call to
``execute`` is one Run: it opens a ledger row, processes every item,
closes the row with aggregate counts and feeds the outcome back into the
source's schedule and health.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from orben.config import settings
from orben.core.exceptions import CacheUnavailable, FetchError, NormalizationError, PersistenceError
from orben.ingestion.base import RawRecord
from orben.ingestion.dedupe import Deduplicator, DedupeAction, fingerprint_deal
from orben.ingestion.factory import FetcherFactory
from orben.ingestion.normalize import CanonicalDeal, DealNormalizer
from orben.ingestion.registry import HealthTransition, SourceSnapshot
from orben.ingestion.scoring import DEFAULT_POLICY, ScoringPolicy, score
from orben.models.base import utcnow
from orben.schemas.deal import DealResponse
from orben.services.cache_service import CacheService, deal_card_key
from orben.services.deal_store import DealStore

logger = structlog.get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"


def new_stats() -> Dict[str, int]:
    return {
        "items_fetched": 0,
        "items_created": 0,
        "items_updated": 0,
        "items_discarded_duplicate": 0,
        "items_failed": 0,
    }


@dataclass
class RunOutcome:
    """Result of one ingestion run."""

    source_slug: str
    run_id: Optional[uuid.UUID]
    status: str
    stats: Dict[str, int] = field(default_factory=new_stats)
    error: Optional[str] = None
    http_status: Optional[int] = None
    transition: Optional[HealthTransition] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS


class IngestionPipeline:
    """Runs ingestion attempts for single sources.

    Stateless between runs apart from injected collaborators, so one
    instance serves every concurrent source task.
    """

    def __init__(
        self,
        store: DealStore,
        fetcher_factory: Optional[FetcherFactory] = None,
        cache: Optional[CacheService] = None,
        normalizer: Optional[DealNormalizer] = None,
        scoring_policy: ScoringPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = utcnow,
        run_timeout: Optional[float] = None,
        degraded_threshold: Optional[int] = None,
        fail_ceiling: Optional[int] = None,
        deal_card_ttl: Optional[int] = None,
    ):
        self.store = store
        self.fetcher_factory = fetcher_factory
        self.cache = cache
        self.normalizer = normalizer or DealNormalizer()
        self.scoring_policy = scoring_policy
        self.clock = clock
        self.run_timeout = run_timeout if run_timeout is not None else settings.SOURCE_RUN_TIMEOUT_SECONDS
        self.degraded_threshold = (
            degraded_threshold if degraded_threshold is not None else settings.SOURCE_DEGRADED_THRESHOLD
        )
        self.fail_ceiling = fail_ceiling if fail_ceiling is not None else settings.SOURCE_FAIL_CEILING
        self.deal_card_ttl = deal_card_ttl if deal_card_ttl is not None else settings.DEAL_CARD_TTL_SECONDS
        self.logger = logger.bind(service="ingestion_pipeline")

    async def execute(
        self,
        source: SourceSnapshot,
        records: Optional[List[RawRecord]] = None,
        record_poll: bool = True,
    ) -> RunOutcome:
        """Run one ingestion attempt for a source.

        Args:
            source: Source snapshot to ingest
            records: Pre-fetched records (manual submissions); fetched when None
            record_poll: Update the source's schedule and health afterwards

        Returns:
            RunOutcome with aggregate counts

        Raises:
            PersistenceError: If the run cannot even be opened in the ledger
        """
        started_at = self.clock()
        run_id = await self.store.open_run(source.id, started_at)
        outcome = RunOutcome(source_slug=source.slug, run_id=run_id, status=SUCCESS)
        cards: Dict[uuid.UUID, Dict[str, Any]] = {}

        self.logger.info("source_run_started", source=source.slug, run_id=str(run_id))

        try:
            await asyncio.wait_for(
                self._ingest(source, records, outcome, cards),
                timeout=self.run_timeout,
            )
        except asyncio.TimeoutError:
            outcome.status = FAILURE
            outcome.error = f"run timed out after {self.run_timeout}s"
        except FetchError as e:
            outcome.status = FAILURE
            outcome.error = e.message
            outcome.http_status = e.status_code
        except PersistenceError as e:
            outcome.status = FAILURE
            outcome.error = e.message
        except Exception as e:
            self.logger.error("source_run_crashed", source=source.slug, error=str(e), exc_info=True)
            outcome.status = FAILURE
            outcome.error = f"unexpected error: {e!r}"

        finished_at = self.clock()
        try:
            await self.store.record_ingestion_run(
                run_id,
                status=outcome.status,
                finished_at=finished_at,
                counts=outcome.stats,
                error_message=outcome.error,
                http_status=outcome.http_status,
            )
        except PersistenceError as e:
            self.logger.error("run_close_failed", source=source.slug, run_id=str(run_id), error=e.message)

        if record_poll:
            outcome.transition = await self._record_poll(source, outcome, finished_at)

        if cards:
            await self._refresh_cache(source, cards)

        log = self.logger.info if outcome.succeeded else self.logger.warning
        log(
            "source_run_completed" if outcome.succeeded else "source_run_failed",
            source=source.slug,
            run_id=str(run_id),
            error=outcome.error,
            http_status=outcome.http_status,
            **outcome.stats,
        )
        return outcome

    async def _ingest(
        self,
        source: SourceSnapshot,
        records: Optional[List[RawRecord]],
        outcome: RunOutcome,
        cards: Dict[uuid.UUID, Dict[str, Any]],
    ) -> None:
        stats = outcome.stats
        if records is None:
            fetcher = self.fetcher_factory.create_fetcher(source.type) if self.fetcher_factory else None
            if fetcher is None:
                raise FetchError(source.slug, f"no fetcher for source type '{source.type}'", retryable=False)
            result = await fetcher.fetch(source)
            outcome.http_status = result.http_status
            records = result.records
            stats["items_failed"] += result.items_skipped
            stats["items_fetched"] = result.item_count + result.items_skipped
        else:
            stats["items_fetched"] = len(records)

        dedup = Deduplicator()
        for record in records:
            try:
                await self._process_record(record, source, dedup, stats, cards)
            except PersistenceError:
                raise
            except NormalizationError as e:
                stats["items_failed"] += 1
                self.logger.debug("item_normalization_failed", source=source.slug, error=e.message)
            except Exception as e:
                stats["items_failed"] += 1
                self.logger.error("item_processing_failed", source=source.slug, error=str(e), exc_info=True)

    async def _process_record(
        self,
        record: RawRecord,
        source: SourceSnapshot,
        dedup: Deduplicator,
        stats: Dict[str, int],
        cards: Dict[uuid.UUID, Dict[str, Any]],
    ) -> None:
        deal = self.normalizer.normalize(record, source)
        fields = self._deal_fields(deal)
        fingerprint = fingerprint_deal(deal)

        if dedup.seen(fingerprint):
            stats["items_discarded_duplicate"] += 1
            return

        existing = await self.store.get_active_deal(fingerprint)
        decision = dedup.decide(fingerprint, fields, existing)

        if decision.action == DedupeAction.DISCARD:
            stats["items_discarded_duplicate"] += 1
            return

        now = self.clock()
        deal_id, created = await self.store.upsert_deal(fingerprint, fields, now=now)
        stats["items_created" if created else "items_updated"] += 1

        card = dict(fields, id=deal_id, fingerprint=fingerprint, status="active", updated_at=now)
        if existing is not None and not created:
            card["posted_at"] = existing.posted_at
            card["created_at"] = existing.created_at
        else:
            card["created_at"] = now
        cards[deal_id] = card

    def _deal_fields(self, deal: CanonicalDeal) -> Dict[str, Any]:
        return {
            "title": deal.title,
            "description": deal.description,
            "url": deal.url,
            "image_url": deal.image_url,
            "merchant": deal.merchant,
            "category": deal.category,
            "price": deal.price,
            "original_price": deal.original_price,
            "discount_percentage": deal.discount_percentage,
            "score": score(deal, self.scoring_policy),
            "posted_at": deal.posted_at,
            "expires_at": deal.expires_at,
            "source_id": deal.source_id,
            "source_item_id": deal.source_item_id,
        }

    async def _record_poll(
        self,
        source: SourceSnapshot,
        outcome: RunOutcome,
        polled_at: datetime,
    ) -> Optional[HealthTransition]:
        try:
            transition = await self.store.record_poll_outcome(
                source.id,
                succeeded=outcome.succeeded,
                polled_at=polled_at,
                degraded_threshold=self.degraded_threshold,
                fail_ceiling=self.fail_ceiling,
            )
        except PersistenceError as e:
            self.logger.error("poll_outcome_update_failed", source=source.slug, error=e.message)
            return None

        if transition.changed:
            if outcome.succeeded:
                self.logger.warning("source_recovered", source=source.slug)
            else:
                self.logger.warning("source_degraded", source=source.slug, fail_count=transition.fail_count)
        if transition.ceiling_exceeded:
            self.logger.warning(
                "source_fail_ceiling_exceeded",
                source=source.slug,
                fail_count=transition.fail_count,
                ceiling=self.fail_ceiling,
            )
        return transition

    async def _refresh_cache(self, source: SourceSnapshot, cards: Dict[uuid.UUID, Dict[str, Any]]) -> None:
        """Write deal cards and bump the feed version. Cache failures never fail a run."""
        if self.cache is None:
            return
        try:
            for deal_id, card in cards.items():
                payload = DealResponse.model_validate(card).model_dump(mode="json")
                await self.cache.set_json(deal_card_key(deal_id), payload, ttl=self.deal_card_ttl)
            await self.cache.bump_feed_version()
        except CacheUnavailable as e:
            self.logger.warning("deal_cache_refresh_failed", source=source.slug, error=e.message)

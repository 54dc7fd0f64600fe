"""Deal Store: relational persistence for sources, deals and the run ledger.

All methods open their own short-lived session from the injected factory,
so one DealStore is safe to share across concurrent ingestion tasks.
SQLAlchemy errors surface as ``PersistenceError``.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orben.core.exceptions import NotFoundError, PersistenceError
from orben.ingestion.registry import HealthTransition, SourceSnapshot, next_health_state
from orben.models.base import utcnow
from orben.models.deal import Deal
from orben.models.ingestion_run import IngestionRun
from orben.models.source import Source

logger = structlog.get_logger(__name__)

# Fields the pipeline may never overwrite on an existing deal
IMMUTABLE_DEAL_FIELDS = frozenset(["id", "fingerprint", "posted_at", "created_at", "status"])

DEAL_FIELDS = frozenset([
    "title", "description", "url", "image_url", "merchant", "category",
    "price", "original_price", "discount_percentage", "score",
    "posted_at", "expires_at", "source_id", "source_item_id",
])


class DealStore:
    """Persistence gateway used by the pipeline, scheduler and API."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="deal_store")

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    async def get_active_deal(self, fingerprint: str) -> Optional[Deal]:
        """Look up the active deal with this fingerprint, if any."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Deal).where(Deal.fingerprint == fingerprint, Deal.status == "active")
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"deal lookup failed: {e}") from e

    async def upsert_deal(
        self,
        fingerprint: str,
        fields: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Tuple[uuid.UUID, bool]:
        """Insert a new active deal or update the active one in place.

        Lookup-by-fingerprint then insert-or-update. A concurrent writer
        that wins the insert race trips the partial unique index, and the
        write falls back to an update of the winner's row.

        Args:
            fingerprint: Deal fingerprint
            fields: Canonical column values to write
            now: Timestamp for updated_at (defaults to the current time)

        Returns:
            Tuple of (deal id, created)

        Raises:
            PersistenceError: If the store rejects the write
        """
        now = now or utcnow()
        values = {k: v for k, v in fields.items() if k in DEAL_FIELDS}

        try:
            async with self.session_factory() as session:
                existing = await self._lock_active(session, fingerprint)
                if existing is not None:
                    self._apply_update(existing, values, now)
                    await session.commit()
                    return existing.id, False

                deal = Deal(fingerprint=fingerprint, status="active", created_at=now, updated_at=now, **values)
                if deal.posted_at is None:
                    deal.posted_at = now
                session.add(deal)
                try:
                    await session.commit()
                    return deal.id, True
                except IntegrityError:
                    await session.rollback()
                    self.logger.info("deal_insert_race_lost", fingerprint=fingerprint[:16])

                existing = await self._lock_active(session, fingerprint)
                if existing is None:
                    raise PersistenceError(f"deal {fingerprint[:16]} rejected by the store")
                self._apply_update(existing, values, now)
                await session.commit()
                return existing.id, False
        except SQLAlchemyError as e:
            raise PersistenceError(f"deal upsert failed: {e}") from e

    @staticmethod
    async def _lock_active(session: AsyncSession, fingerprint: str) -> Optional[Deal]:
        result = await session.execute(
            select(Deal)
            .where(Deal.fingerprint == fingerprint, Deal.status == "active")
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_update(deal: Deal, values: Dict[str, Any], now: datetime) -> None:
        for name, value in values.items():
            if name not in IMMUTABLE_DEAL_FIELDS:
                setattr(deal, name, value)
        deal.updated_at = now

    async def get_deal(self, deal_id: uuid.UUID) -> Deal:
        try:
            async with self.session_factory() as session:
                deal = await session.get(Deal, deal_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"deal lookup failed: {e}") from e
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))
        return deal

    async def get_deal_feed(
        self,
        search: Optional[str] = None,
        merchant: Optional[str] = None,
        category: Optional[str] = None,
        min_score: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Deal]:
        """Active deals, newest first, then best score.

        Args:
            search: Case-insensitive substring of the title
            merchant: Exact merchant (case-insensitive)
            category: Exact category (case-insensitive)
            min_score: Minimum score
            limit: Page size
            offset: Rows to skip

        Returns:
            Deals sorted by posted_at DESC, score DESC
        """
        query = select(Deal).where(Deal.status == "active")

        if search:
            query = query.where(Deal.title.icontains(search.strip(), autoescape=True))
        if merchant:
            query = query.where(func.lower(Deal.merchant) == merchant.strip().lower())
        if category:
            query = query.where(func.lower(Deal.category) == category.strip().lower())
        if min_score is not None:
            query = query.where(Deal.score >= min_score)

        query = (
            query.order_by(Deal.posted_at.desc(), Deal.score.desc(), Deal.id)
            .limit(limit)
            .offset(offset)
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"deal feed query failed: {e}") from e

    async def expire_stale_deals(self, now: datetime, max_age: timedelta) -> List[uuid.UUID]:
        """Mark active deals expired when past expires_at or older than max_age.

        Returns:
            Ids of the deals expired, so callers can drop their cached cards
        """
        cutoff = now - max_age
        stale = (
            select(Deal.id)
            .where(Deal.status == "active")
            .where(or_(Deal.expires_at <= now, Deal.posted_at < cutoff))
            .with_for_update()
        )
        try:
            async with self.session_factory() as session:
                expired = list((await session.execute(stale)).scalars().all())
                if expired:
                    await session.execute(
                        update(Deal)
                        .where(Deal.id.in_(expired))
                        .where(Deal.status == "active")
                        .values(status="expired", updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"deal expiry sweep failed: {e}") from e

        self.logger.info("deals_expired", count=len(expired), cutoff=cutoff.isoformat())
        return expired

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def list_sources(self) -> List[Source]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Source).order_by(Source.name))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"source listing failed: {e}") from e

    async def list_enabled_sources(self) -> List[SourceSnapshot]:
        """Registry snapshot of every enabled source."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Source).where(Source.enabled.is_(True)))
                return [SourceSnapshot.from_model(s) for s in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"source listing failed: {e}") from e

    async def get_source(self, source_id: uuid.UUID) -> Source:
        try:
            async with self.session_factory() as session:
                source = await session.get(Source, source_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"source lookup failed: {e}") from e
        if source is None:
            raise NotFoundError("Source", str(source_id))
        return source

    async def get_source_by_slug(self, slug: str) -> Source:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Source).where(Source.slug == slug))
                source = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"source lookup failed: {e}") from e
        if source is None:
            raise NotFoundError("Source", slug)
        return source

    async def create_source(self, **fields: Any) -> Source:
        try:
            async with self.session_factory() as session:
                source = Source(**fields)
                session.add(source)
                await session.commit()
                return source
        except SQLAlchemyError as e:
            raise PersistenceError(f"source create failed: {e}") from e

    async def update_source(
        self,
        source_id: uuid.UUID,
        enabled: Optional[bool] = None,
        poll_interval_minutes: Optional[int] = None,
        endpoint: Optional[str] = None,
    ) -> Source:
        """Operator edits: enable/disable, poll interval, endpoint."""
        try:
            async with self.session_factory() as session:
                source = await session.get(Source, source_id)
                if source is None:
                    raise NotFoundError("Source", str(source_id))
                if enabled is not None:
                    source.enabled = enabled
                if poll_interval_minutes is not None:
                    source.poll_interval_minutes = poll_interval_minutes
                if endpoint is not None:
                    source.endpoint = endpoint
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"source update failed: {e}") from e

        self.logger.info(
            "source_updated",
            source=source.slug,
            enabled=source.enabled,
            poll_interval_minutes=source.poll_interval_minutes,
        )
        return source

    async def reset_last_polled(self, source_id: uuid.UUID) -> Source:
        """Clear last_polled_at so the next tick polls the source."""
        try:
            async with self.session_factory() as session:
                source = await session.get(Source, source_id)
                if source is None:
                    raise NotFoundError("Source", str(source_id))
                source.last_polled_at = None
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"source reset failed: {e}") from e

        self.logger.info("source_repoll_requested", source=source.slug)
        return source

    async def record_poll_outcome(
        self,
        source_id: uuid.UUID,
        succeeded: bool,
        polled_at: datetime,
        degraded_threshold: int,
        fail_ceiling: int,
    ) -> HealthTransition:
        """Apply one poll outcome to the source's schedule and health.

        last_polled_at is set whatever the outcome; fail_count resets on
        success and increments on failure.
        """
        try:
            async with self.session_factory() as session:
                source = await session.get(Source, source_id, with_for_update=True)
                if source is None:
                    raise NotFoundError("Source", str(source_id))

                transition = next_health_state(
                    fail_count=source.fail_count or 0,
                    health=source.health,
                    succeeded=succeeded,
                    degraded_threshold=degraded_threshold,
                    fail_ceiling=fail_ceiling,
                )
                source.last_polled_at = polled_at
                source.fail_count = transition.fail_count
                source.health = transition.health
                if succeeded:
                    source.last_success_at = polled_at
                await session.commit()
                return transition
        except SQLAlchemyError as e:
            raise PersistenceError(f"poll outcome update failed: {e}") from e

    # ------------------------------------------------------------------
    # Ingestion run ledger
    # ------------------------------------------------------------------

    async def open_run(self, source_id: uuid.UUID, started_at: datetime) -> uuid.UUID:
        try:
            async with self.session_factory() as session:
                run = IngestionRun(source_id=source_id, status="running", started_at=started_at)
                session.add(run)
                await session.commit()
                return run.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"run open failed: {e}") from e

    async def record_ingestion_run(
        self,
        run_id: uuid.UUID,
        status: str,
        finished_at: datetime,
        counts: Dict[str, int],
        error_message: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> bool:
        """Close a run exactly once with its aggregate counts.

        Returns:
            False if the run was already closed (left untouched)
        """
        try:
            async with self.session_factory() as session:
                run = await session.get(IngestionRun, run_id, with_for_update=True)
                if run is None:
                    raise NotFoundError("IngestionRun", str(run_id))
                if run.finished_at is not None:
                    self.logger.warning("run_already_closed", run_id=str(run_id), status=run.status)
                    return False

                run.status = status
                run.finished_at = finished_at
                started = run.started_at
                if started is not None:
                    if started.tzinfo is None:
                        started = started.replace(tzinfo=finished_at.tzinfo)
                    elapsed = max(0.0, (finished_at - started).total_seconds())
                    run.duration_seconds = Decimal(str(round(elapsed, 2)))
                for name in (
                    "items_fetched",
                    "items_created",
                    "items_updated",
                    "items_discarded_duplicate",
                    "items_failed",
                ):
                    setattr(run, name, int(counts.get(name, 0)))
                run.error_message = error_message[:2000] if error_message else None
                run.http_status = http_status
                await session.commit()
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"run close failed: {e}") from e

    async def list_runs(self, source_id: uuid.UUID, limit: int = 20) -> List[IngestionRun]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(IngestionRun)
                    .where(IngestionRun.source_id == source_id)
                    .order_by(IngestionRun.started_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"run listing failed: {e}") from e

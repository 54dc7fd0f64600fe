"""Cached read path for the deal feed and single deals."""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from orben.config import settings
from orben.core.exceptions import CacheUnavailable
from orben.schemas.deal import DealResponse
from orben.services.cache_service import CacheService, deal_card_key, feed_cache_key
from orben.services.deal_store import DealStore

logger = structlog.get_logger(__name__)


class FeedService:
    """Serves the feed through the cache.

    Feed pages are cached under the current feed version, which ingestion
    bumps whenever it creates or updates deals. A down cache degrades to
    reading straight from the store.
    """

    def __init__(
        self,
        store: DealStore,
        cache: Optional[CacheService] = None,
        feed_ttl: Optional[int] = None,
        card_ttl: Optional[int] = None,
    ):
        self.store = store
        self.cache = cache
        self.feed_ttl = feed_ttl or settings.FEED_CACHE_TTL_SECONDS
        self.card_ttl = card_ttl or settings.DEAL_CARD_TTL_SECONDS
        self.logger = logger.bind(service="feed_service")

    async def get_feed(
        self,
        search: Optional[str] = None,
        merchant: Optional[str] = None,
        category: Optional[str] = None,
        min_score: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DealResponse]:
        """One page of the active deal feed, newest first then best score."""
        key = None
        if self.cache is not None:
            try:
                version = await self.cache.get_feed_version()
                key = feed_cache_key(
                    version,
                    search=(search or "").strip().lower(),
                    merchant=(merchant or "").strip().lower(),
                    category=(category or "").strip().lower(),
                    min_score=min_score,
                    limit=limit,
                    offset=offset,
                )
                cached = await self.cache.get_json(key)
                if isinstance(cached, list):
                    return [DealResponse.model_validate(item) for item in cached]
            except CacheUnavailable:
                key = None

        rows = await self.store.get_deal_feed(
            search=search,
            merchant=merchant,
            category=category,
            min_score=min_score,
            limit=limit,
            offset=offset,
        )
        deals = [DealResponse.model_validate(row) for row in rows]

        if key is not None:
            try:
                await self.cache.set_json(key, [d.model_dump(mode="json") for d in deals], ttl=self.feed_ttl)
            except CacheUnavailable:
                pass
        return deals

    async def get_deal(self, deal_id: uuid.UUID) -> DealResponse:
        """Single deal, served from its cached card when present.

        Raises:
            NotFoundError: If the deal does not exist
        """
        key = deal_card_key(deal_id)
        if self.cache is not None:
            try:
                cached = await self.cache.get_json(key)
                if isinstance(cached, dict):
                    return DealResponse.model_validate(cached)
            except CacheUnavailable:
                pass

        deal = DealResponse.model_validate(await self.store.get_deal(deal_id))
        if self.cache is not None:
            try:
                await self.cache.set_json(key, deal.model_dump(mode="json"), ttl=self.card_ttl)
            except CacheUnavailable:
                pass
        return deal

    async def sweep_expired(self, now: datetime, max_age: Optional[timedelta] = None) -> int:
        """Expire stale deals, drop their cached cards and invalidate the feed.

        Returns:
            Number of deals expired
        """
        max_age = max_age or timedelta(days=settings.DEAL_MAX_AGE_DAYS)
        expired = await self.store.expire_stale_deals(now, max_age)
        if expired and self.cache is not None:
            try:
                await self.cache.delete_many(deal_card_key(deal_id) for deal_id in expired)
                await self.cache.bump_feed_version()
            except CacheUnavailable as e:
                self.logger.warning("feed_invalidation_failed", error=e.message, expired=len(expired))
        return len(expired)

"""Service layer: persistence, caching, feed reads and product search."""

from orben.services.budget_guard import BudgetGuard
from orben.services.cache_service import CacheService
from orben.services.deal_store import DealStore
from orben.services.feed_service import FeedService
from orben.services.search_service import SearchOrchestrator

__all__ = [
    "BudgetGuard",
    "CacheService",
    "DealStore",
    "FeedService",
    "SearchOrchestrator",
]

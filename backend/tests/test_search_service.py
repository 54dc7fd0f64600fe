"""Tests for the universal search orchestrator."""

import asyncio
from decimal import Decimal
from typing import Any, List

import pytest

from orben.core.exceptions import CacheUnavailable, FetchError
from orben.providers.base import BaseProvider
from orben.providers.factory import ProviderRegistry
from orben.schemas.search import ProductOffer, SearchResult
from orben.services.budget_guard import BudgetGuard
from orben.services.search_service import (
    SearchOrchestrator,
    normalize_query,
    product_offers_key,
    search_cache_key,
)


class FakeProvider(BaseProvider):
    """Provider returning canned products (or raising) and counting calls."""

    def __init__(self, name: str, products=None, error: Exception = None, delay: float = 0, configured=True):
        self.name = name
        super().__init__(http_client=None)
        self.products = products if products is not None else []
        self.error = error
        self.delay = delay
        self.configured = configured
        self.calls: List[tuple] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def search(self, query: str, country: str, limit: int, page: int = 1) -> Any:
        self.calls.append((query, country, limit, page))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.products

    def normalize(self, payload: Any, limit: int) -> List[SearchResult]:
        return [
            SearchResult(title=p["title"], url=p["url"], price=p.get("price"), provider=self.name)
            for p in payload[:limit]
        ]


class OffersProvider(FakeProvider):

    def __init__(self, offers, **kwargs):
        super().__init__("google", **kwargs)
        self.offers = offers
        self.offer_calls = 0

    async def product_offers(self, page_token: str):
        self.offer_calls += 1
        return self.offers


FILTER = {"title": "Fluval 407 Canister Filter", "url": "https://shop.example.com/fluval-407", "price": "229.99"}


def build(cache, *providers, limits=None, user_limit=100, **kwargs) -> SearchOrchestrator:
    registry = ProviderRegistry(default_providers=[p.name for p in providers])
    for provider in providers:
        registry.register(provider)
    guard = BudgetGuard(limits=limits or {}, default_limit=100, window_seconds=86400, user_limit=user_limit)
    return SearchOrchestrator(registry=registry, budget_guard=guard, cache=cache, cache_version=10, **kwargs)


class TestQueryKeys:

    def test_query_normalization(self):
        assert normalize_query("  Fluval   407\tFilter ") == "fluval 407 filter"

    def test_key_is_deterministic_across_spellings(self):
        key = search_cache_key("google", "us", "Fluval 407 Filter", version=10)
        assert key == search_cache_key("google", "US", "  fluval  407 filter", version=10)
        assert key.startswith("search:v10:google:US:")
        assert len(key.rsplit(":", 1)[1]) == 32

    def test_key_varies_by_provider_country_and_version(self):
        base = search_cache_key("google", "US", "fluval", version=10)
        assert base != search_cache_key("ebay", "US", "fluval", version=10)
        assert base != search_cache_key("google", "GB", "fluval", version=10)
        assert base != search_cache_key("google", "US", "fluval", version=11)

    def test_key_varies_by_limit_and_page(self):
        base = search_cache_key("google", "US", "fluval", limit=20, page=1, version=10)
        assert base == search_cache_key("google", "US", "fluval", version=10)
        assert base != search_cache_key("google", "US", "fluval", limit=5, version=10)
        assert base != search_cache_key("google", "US", "fluval", limit=20, page=2, version=10)


class TestSearch:

    async def test_budget_exhausted_provider_skipped_and_answer_cached(self, cache, fake_redis):
        """Provider A has no budget; B answers and only B's answer is cached."""
        provider_a = FakeProvider("google", products=[FILTER])
        provider_b = FakeProvider("ebay", products=[FILTER])
        orchestrator = build(cache, provider_a, provider_b, limits={"google": 0, "ebay": 5})

        response = await orchestrator.search("Fluval 407 Filter", providers=["google", "ebay"])

        outcomes = {o.provider: o.status for o in response.providers}
        assert outcomes == {"google": "skipped_budget", "ebay": "ok"}
        assert response.status == "partial"
        assert [item.provider for item in response.items] == ["ebay"]
        assert provider_a.calls == []
        assert search_cache_key("ebay", "US", "fluval 407 filter", version=10) in fake_redis.store
        assert search_cache_key("google", "US", "fluval 407 filter", version=10) not in fake_redis.store

        again = await orchestrator.search("fluval 407 filter", providers=["ebay"])

        assert again.providers[0].status == "cached"
        assert again.providers[0].cached is True
        assert again.items[0].price == Decimal("229.99")
        assert len(provider_b.calls) == 1
        assert await orchestrator.budget_guard.remaining("ebay") == 4

    async def test_all_answered_is_ok(self, cache):
        orchestrator = build(cache, FakeProvider("google", products=[FILTER]))
        response = await orchestrator.search("fluval")
        assert response.status == "ok"
        assert response.normalized_query == "fluval"
        assert response.country == "US"

    async def test_results_merged_without_duplicate_urls(self, cache):
        other = {"title": "Fluval 407 (renewed)", "url": "https://shop.example.com/fluval-407-renewed"}
        orchestrator = build(
            cache,
            FakeProvider("google", products=[FILTER, other]),
            FakeProvider("ebay", products=[FILTER]),
        )

        response = await orchestrator.search("fluval", providers=["auto"])

        assert [item.url for item in response.items] == [FILTER["url"], other["url"]]

    async def test_empty_query_rejected(self, cache):
        orchestrator = build(cache, FakeProvider("google"))
        with pytest.raises(ValueError):
            await orchestrator.search("   ")

    async def test_empty_answer_not_cached(self, cache, fake_redis):
        provider = FakeProvider("google", products=[])
        orchestrator = build(cache, provider)

        response = await orchestrator.search("nothing matches")
        await orchestrator.search("nothing matches")

        assert response.providers[0].status == "empty"
        assert response.status == "ok"
        assert fake_redis.keys_matching("search:*") == []
        assert len(provider.calls) == 2

    async def test_unknown_and_unconfigured_providers_reported(self, cache):
        orchestrator = build(cache, FakeProvider("google", configured=False))

        response = await orchestrator.search("fluval", providers=["google", "bing"])

        outcomes = {o.provider: o.status for o in response.providers}
        assert outcomes == {"google": "not_configured", "bing": "unknown"}
        assert response.status == "partial"
        assert response.items == []

    async def test_provider_error_refunds_budget(self, cache):
        provider = FakeProvider("google", error=FetchError("google", "HTTP 500", status_code=500))
        orchestrator = build(cache, provider, limits={"google": 2})

        response = await orchestrator.search("fluval")

        assert response.providers[0].status == "error"
        assert "HTTP 500" in response.providers[0].error
        assert await orchestrator.budget_guard.remaining("google") == 2

    async def test_slow_provider_times_out(self, cache):
        orchestrator = build(
            cache,
            FakeProvider("google", products=[FILTER], delay=5),
            FakeProvider("ebay", products=[FILTER]),
            provider_timeout=0.05,
        )

        response = await orchestrator.search("fluval", providers=["google", "ebay"])

        outcomes = {o.provider: o.status for o in response.providers}
        assert outcomes == {"google": "timeout", "ebay": "ok"}
        assert len(response.items) == 1
        assert await orchestrator.budget_guard.remaining("google") == 100

    async def test_cache_down_still_searches(self, cache, fake_redis):
        fake_redis.down = True
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider)

        response = await orchestrator.search("fluval")

        assert response.status == "ok"
        assert len(response.items) == 1

    async def test_unavailable_when_cache_down_and_nothing_answers(self, cache, fake_redis):
        fake_redis.down = True
        orchestrator = build(cache, FakeProvider("google", error=FetchError("google", "timeout")))

        response = await orchestrator.search("fluval")

        assert response.status == "unavailable"
        assert response.items == []

    async def test_country_is_part_of_cache_key(self, cache, fake_redis):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider)

        await orchestrator.search("fluval", country="gb")

        assert search_cache_key("google", "GB", "fluval", version=10) in fake_redis.store
        assert provider.calls == [("fluval", "GB", 20, 1)]


def catalogue(count: int):
    return [
        {"title": f"Fluval filter part {i}", "url": f"https://shop.example.com/fluval-part-{i}", "price": "9.99"}
        for i in range(count)
    ]


class TestLimitsAndPages:

    async def test_smaller_limit_is_not_served_a_larger_cached_page(self, cache):
        provider = FakeProvider("google", products=catalogue(20))
        orchestrator = build(cache, provider)

        first = await orchestrator.search("fluval filter", limit=20)
        second = await orchestrator.search("fluval filter", limit=3)

        assert len(first.items) == 20
        assert len(second.items) == 3
        assert second.providers[0].status == "ok"
        assert [call[2] for call in provider.calls] == [20, 3]

    async def test_cached_list_trimmed_to_limit(self, cache):
        provider = FakeProvider("google", products=[])
        orchestrator = build(cache, provider)
        key = search_cache_key("google", "US", "fluval", limit=3, version=10)
        await cache.set_json(
            key,
            [SearchResult(title=p["title"], url=p["url"], provider="google").model_dump(mode="json") for p in catalogue(5)],
            ttl=60,
        )

        response = await orchestrator.search("fluval", limit=3)

        assert response.providers[0].status == "cached"
        assert len(response.items) == 3
        assert provider.calls == []

    async def test_pages_are_fetched_and_cached_separately(self, cache, fake_redis):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider)

        await orchestrator.search("fluval")
        response = await orchestrator.search("fluval", page=2)

        assert response.page == 2
        assert response.providers[0].status == "ok"
        assert provider.calls == [("fluval", "US", 20, 1), ("fluval", "US", 20, 2)]
        assert search_cache_key("google", "US", "fluval", page=2, version=10) in fake_redis.store


class TestCacheBust:

    async def test_cache_bust_skips_read_and_refreshes(self, cache, fake_redis):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider)
        await orchestrator.search("fluval")

        provider.products = [FILTER, {"title": "Fluval 407 v2", "url": "https://shop.example.com/fluval-407-v2"}]
        busted = await orchestrator.search("fluval", cache_bust=True)
        cached = await orchestrator.search("fluval")

        assert busted.providers[0].status == "ok"
        assert len(busted.items) == 2
        assert cached.providers[0].status == "cached"
        assert len(cached.items) == 2
        assert len(provider.calls) == 2

    async def test_cache_bust_still_charges_budget(self, cache):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider, limits={"google": 1})
        await orchestrator.search("fluval")

        response = await orchestrator.search("fluval", cache_bust=True)

        assert response.providers[0].status == "skipped_budget"
        assert len(provider.calls) == 1


class TestUserQuota:

    async def test_user_over_quota_is_skipped(self, cache):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider, user_limit=1)

        first = await orchestrator.search("fluval", user_id="user-1")
        second = await orchestrator.search("tetra", user_id="user-1")
        other_user = await orchestrator.search("tetra", user_id="user-2")

        assert first.providers[0].status == "ok"
        assert second.providers[0].status == "skipped_user_quota"
        assert second.status == "partial"
        assert other_user.providers[0].status == "ok"
        assert len(provider.calls) == 2

    async def test_cached_answers_do_not_use_quota(self, cache):
        provider = FakeProvider("google", products=[FILTER])
        orchestrator = build(cache, provider, user_limit=1)

        await orchestrator.search("fluval", user_id="user-1")
        again = await orchestrator.search("fluval", user_id="user-1")

        assert again.providers[0].status == "cached"
        assert await orchestrator.budget_guard.user_remaining("user-1") == 0

    async def test_failed_call_refunds_user_quota(self, cache):
        provider = FakeProvider("google", error=FetchError("google", "HTTP 502", status_code=502))
        orchestrator = build(cache, provider, user_limit=1)

        await orchestrator.search("fluval", user_id="user-1")

        assert await orchestrator.budget_guard.user_remaining("user-1") == 1

    async def test_anonymous_searches_have_no_user_quota(self, cache):
        provider = FakeProvider("google", products=[])
        orchestrator = build(cache, provider, user_limit=0)

        response = await orchestrator.search("fluval")

        assert response.providers[0].status == "empty"


class TestConcurrentBudget:

    async def test_concurrent_searches_respect_budget(self, cache):
        provider = FakeProvider("google", products=[FILTER], delay=0.01)
        orchestrator = build(cache, provider, limits={"google": 3})

        responses = await asyncio.gather(*(orchestrator.search(f"fluval {i}") for i in range(10)))

        statuses = [r.providers[0].status for r in responses]
        assert len(provider.calls) <= 3
        assert statuses.count("ok") == 3
        assert statuses.count("skipped_budget") == 7
        assert await orchestrator.budget_guard.remaining("google") == 0


class TestFlush:

    async def test_flush_recomputes_keys(self, cache, fake_redis):
        orchestrator = build(cache, FakeProvider("google", products=[FILTER]), FakeProvider("ebay", products=[FILTER]))
        await orchestrator.search("Fluval 407 Filter", providers=["google", "ebay"])
        assert len(fake_redis.keys_matching("search:*")) == 2

        result = await orchestrator.flush(["  FLUVAL 407 filter", ""])

        assert result.keys_checked == 2
        assert result.keys_deleted == 2
        assert fake_redis.keys_matching("search:*") == []

    async def test_flush_scoped_to_provider_and_country(self, cache, fake_redis):
        orchestrator = build(cache, FakeProvider("google", products=[FILTER]), FakeProvider("ebay", products=[FILTER]))
        await orchestrator.search("fluval", providers=["google", "ebay"])

        result = await orchestrator.flush(["fluval"], providers=["ebay"], countries=["us", "gb"])

        assert result.keys_checked == 2
        assert result.keys_deleted == 1
        assert fake_redis.keys_matching("search:*") == [search_cache_key("google", "US", "fluval", version=10)]

    async def test_flush_covers_requested_limits_and_pages(self, cache, fake_redis):
        orchestrator = build(cache, FakeProvider("google", products=[FILTER]))
        await orchestrator.search("fluval", limit=5)
        await orchestrator.search("fluval", limit=5, page=2)
        await orchestrator.search("fluval")

        result = await orchestrator.flush(["fluval"], limits=[5], pages=[1, 2])

        assert result.keys_checked == 2
        assert result.keys_deleted == 2
        assert fake_redis.keys_matching("search:*") == [search_cache_key("google", "US", "fluval", version=10)]

    async def test_flush_raises_when_cache_down(self, cache, fake_redis):
        orchestrator = build(cache, FakeProvider("google"))
        fake_redis.down = True
        with pytest.raises(CacheUnavailable):
            await orchestrator.flush(["fluval"])


class TestProductOffers:

    async def test_offers_fetched_then_served_from_cache(self, cache, fake_redis):
        provider = OffersProvider([ProductOffer(merchant="Chewy", price=Decimal("219.99"))], products=[])
        orchestrator = build(cache, provider)

        first = await orchestrator.get_product_offers("token-123")
        second = await orchestrator.get_product_offers("token-123")

        assert first.status == "ok"
        assert first.cached is False
        assert second.cached is True
        assert second.offers[0].merchant == "Chewy"
        assert provider.offer_calls == 1
        assert product_offers_key("token-123") in fake_redis.store

    async def test_offers_not_configured(self, cache):
        orchestrator = build(cache, FakeProvider("google"))
        response = await orchestrator.get_product_offers("token-123")
        assert response.status == "not_configured"

    async def test_offers_over_budget(self, cache):
        provider = OffersProvider([], products=[])
        orchestrator = build(cache, provider, limits={"google": 0})
        response = await orchestrator.get_product_offers("token-123")
        assert response.status == "skipped_budget"
        assert provider.offer_calls == 0

    async def test_blank_token_rejected(self, cache):
        orchestrator = build(cache, FakeProvider("google"))
        with pytest.raises(ValueError):
            await orchestrator.get_product_offers(" ")

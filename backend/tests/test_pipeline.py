"""End-to-end tests for one ingestion run: fetch, normalize, score, dedupe, persist."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from orben.core.exceptions import FetchError
from orben.ingestion.base import FetchResult, RawRecord
from orben.ingestion.pipeline import FAILURE, SUCCESS, IngestionPipeline
from orben.ingestion.registry import DEGRADED, as_utc
from orben.services.cache_service import FEED_VERSION_KEY, deal_card_key

from conftest import make_source


URL = "https://www.bestbuy.com/site/6408356"


def rss_record(title="Sony WH-1000XM4 — $199 (was $349)", link=URL, **extra) -> RawRecord:
    data = {"guid": "sd-1", "title": title, "link": link, "summary": None, "image_url": None}
    data.update(extra)
    return RawRecord(source_type="rss", data=data, fetched_at=datetime(2024, 6, 1, 11, 0, tzinfo=timezone.utc))


def fetcher_factory(*results):
    """Factory whose rss fetcher returns (or raises) each result in turn."""
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=list(results))
    factory = MagicMock()
    factory.create_fetcher.return_value = fetcher
    factory.registered_types.return_value = ["rss", "affiliate", "api"]
    return factory


@pytest.fixture
def pipeline(store, cache, clock):
    return IngestionPipeline(store, fetcher_factory=fetcher_factory(), cache=cache, clock=clock)


class TestIngestionRun:

    async def test_new_rss_item_creates_active_deal(self, pipeline, store, rss_source):
        """An RSS headline with "was" pricing becomes one scored, active deal."""
        outcome = await pipeline.execute(rss_source, records=[rss_record()])

        assert outcome.status == SUCCESS
        assert outcome.stats["items_fetched"] == 1
        assert outcome.stats["items_created"] == 1

        deals = await store.get_deal_feed()
        assert len(deals) == 1
        deal = deals[0]
        assert deal.price == Decimal("199.00")
        assert deal.original_price == Decimal("349.00")
        assert deal.discount_percentage == 43
        assert deal.merchant == "BestBuy"
        assert deal.category == "electronics"
        assert deal.status == "active"
        assert 0 <= deal.score <= 100
        assert deal.score == 36
        assert deal.source_id == rss_source.id

    async def test_price_drop_updates_in_place(self, pipeline, store, rss_source):
        """A re-reported item at a lower price updates the same row."""
        await pipeline.execute(rss_source, records=[rss_record()])
        first = (await store.get_deal_feed())[0]

        outcome = await pipeline.execute(
            rss_source, records=[rss_record(title="Sony WH-1000XM4 — $179 (was $349)")]
        )

        assert outcome.stats["items_updated"] == 1
        assert outcome.stats["items_created"] == 0
        deals = await store.get_deal_feed()
        assert len(deals) == 1
        assert deals[0].id == first.id
        assert deals[0].price == Decimal("179.00")
        assert deals[0].discount_percentage == 49

    async def test_rerun_with_identical_items_changes_nothing(self, pipeline, store, rss_source):
        await pipeline.execute(rss_source, records=[rss_record()])
        before = (await store.get_deal_feed())[0]

        outcome = await pipeline.execute(rss_source, records=[rss_record()])

        assert outcome.stats["items_discarded_duplicate"] == 1
        assert outcome.stats["items_created"] == 0
        assert outcome.stats["items_updated"] == 0
        after = (await store.get_deal_feed())[0]
        assert after.updated_at == before.updated_at

    async def test_duplicate_within_one_run_written_once(self, pipeline, store, rss_source):
        outcome = await pipeline.execute(
            rss_source,
            records=[rss_record(), rss_record(link=URL + "?utm_source=newsletter")],
        )

        assert outcome.stats["items_created"] == 1
        assert outcome.stats["items_discarded_duplicate"] == 1
        assert len(await store.get_deal_feed()) == 1

    async def test_bad_item_counted_and_run_continues(self, pipeline, store, rss_source):
        outcome = await pipeline.execute(
            rss_source,
            records=[rss_record(title="Mystery deal, see site"), rss_record()],
        )

        assert outcome.status == SUCCESS
        assert outcome.stats["items_failed"] == 1
        assert outcome.stats["items_created"] == 1

    async def test_run_ledger_closed_with_counts(self, pipeline, store, rss_source, clock):
        outcome = await pipeline.execute(rss_source, records=[rss_record(), rss_record()])

        runs = await store.list_runs(rss_source.id)
        assert len(runs) == 1
        run = runs[0]
        assert run.id == outcome.run_id
        assert run.status == SUCCESS
        assert run.items_fetched == 2
        assert run.items_created == 1
        assert run.items_discarded_duplicate == 1
        assert as_utc(run.finished_at) == clock.now

        # A run closes exactly once
        closed_again = await store.record_ingestion_run(
            run.id, status=FAILURE, finished_at=clock.now, counts={}
        )
        assert closed_again is False
        assert (await store.list_runs(rss_source.id))[0].status == SUCCESS


class TestFetchedRuns:

    async def test_fetcher_records_are_ingested(self, store, cache, clock, rss_source):
        factory = fetcher_factory(FetchResult(records=[rss_record()], http_status=200, items_skipped=2))
        pipeline = IngestionPipeline(store, fetcher_factory=factory, cache=cache, clock=clock)

        outcome = await pipeline.execute(rss_source)

        assert outcome.succeeded
        assert outcome.http_status == 200
        assert outcome.stats["items_fetched"] == 3
        assert outcome.stats["items_failed"] == 2
        factory.create_fetcher.assert_called_once_with("rss")

    async def test_fetch_failure_fails_run_and_counts_against_source(self, store, cache, clock, rss_source):
        error = FetchError(rss_source.slug, "HTTP 503", retryable=True, status_code=503)
        pipeline = IngestionPipeline(store, fetcher_factory=fetcher_factory(error), cache=cache, clock=clock)

        outcome = await pipeline.execute(rss_source)

        assert outcome.status == FAILURE
        assert outcome.http_status == 503
        run = (await store.list_runs(rss_source.id))[0]
        assert run.status == FAILURE
        assert run.http_status == 503
        assert "HTTP 503" in run.error_message

        source = await store.get_source(rss_source.id)
        assert source.fail_count == 1
        assert as_utc(source.last_polled_at) == clock.now
        assert source.last_success_at is None

    async def test_run_timeout_fails_run(self, store, cache, clock, rss_source):
        async def slow_fetch(source):
            await asyncio.sleep(5)

        factory = fetcher_factory()
        factory.create_fetcher.return_value.fetch = AsyncMock(side_effect=slow_fetch)
        pipeline = IngestionPipeline(store, fetcher_factory=factory, cache=cache, clock=clock, run_timeout=0.05)

        outcome = await pipeline.execute(rss_source)

        assert outcome.status == FAILURE
        assert "timed out" in outcome.error
        assert (await store.list_runs(rss_source.id))[0].status == FAILURE

    async def test_source_without_fetcher_fails(self, store, cache, clock):
        manual = await make_source(store, slug="manual", type="manual", endpoint=None)
        factory = fetcher_factory()
        factory.create_fetcher.return_value = None
        pipeline = IngestionPipeline(store, fetcher_factory=factory, cache=cache, clock=clock)

        outcome = await pipeline.execute(manual)

        assert outcome.status == FAILURE
        assert "no fetcher" in outcome.error

    async def test_consecutive_failures_degrade_then_success_recovers(self, store, cache, clock, rss_source):
        error = FetchError(rss_source.slug, "HTTP 500", status_code=500)
        factory = fetcher_factory(error, error, error, FetchResult(records=[rss_record()]))
        pipeline = IngestionPipeline(
            store, fetcher_factory=factory, cache=cache, clock=clock, degraded_threshold=3, fail_ceiling=10
        )

        for _ in range(3):
            outcome = await pipeline.execute(rss_source)
        assert outcome.transition.health == DEGRADED
        assert outcome.transition.changed
        assert (await store.get_source(rss_source.id)).health == DEGRADED

        outcome = await pipeline.execute(rss_source)
        source = await store.get_source(rss_source.id)
        assert outcome.succeeded
        assert source.health == "healthy"
        assert source.fail_count == 0
        assert as_utc(source.last_success_at) == clock.now


class TestRunCacheEffects:

    async def test_changed_deals_cached_and_feed_version_bumped(self, pipeline, store, fake_redis, rss_source):
        await pipeline.execute(rss_source, records=[rss_record()])

        deal = (await store.get_deal_feed())[0]
        assert deal_card_key(deal.id) in fake_redis.store
        assert fake_redis.store[FEED_VERSION_KEY] == "1"

    async def test_no_changes_leave_feed_version(self, pipeline, fake_redis, rss_source):
        await pipeline.execute(rss_source, records=[rss_record()])
        await pipeline.execute(rss_source, records=[rss_record()])
        assert fake_redis.store[FEED_VERSION_KEY] == "1"

    async def test_cache_outage_does_not_fail_run(self, pipeline, store, fake_redis, rss_source):
        fake_redis.down = True

        outcome = await pipeline.execute(rss_source, records=[rss_record()])

        assert outcome.succeeded
        assert len(await store.get_deal_feed()) == 1

    async def test_manual_submission_leaves_schedule_untouched(self, pipeline, store, rss_source):
        await pipeline.execute(rss_source, records=[rss_record()], record_poll=False)

        source = await store.get_source(rss_source.id)
        assert source.last_polled_at is None
        assert source.fail_count == 0

"""Run one ingestion pass for a single source and print the outcome.

Useful for checking a new feed before enabling it. The run is recorded
in the ledger and updates the source's schedule and health, exactly like
a scheduled poll.

Usage:
    python scripts/run_source.py --source slickdeals-frontpage
    python scripts/run_source.py --source dealnews --no-cache
    python scripts/run_source.py --list
"""

import argparse
import asyncio
import sys
import os

# Add backend to path so we can import orben modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from orben.core.exceptions import NotFoundError
from orben.db.session import async_session_factory, engine
from orben.ingestion.factory import FetcherFactory, register_default_fetchers
from orben.ingestion.pipeline import IngestionPipeline
from orben.ingestion.registry import SourceSnapshot
from orben.services.cache_service import get_cache_service
from orben.services.deal_store import DealStore


async def list_sources(store: DealStore) -> None:
    sources = await store.list_sources()
    print(f"\n{'SLUG':<28} {'TYPE':<10} {'ENABLED':<8} {'HEALTH':<9} FAILS")
    for source in sources:
        print(
            f"{source.slug:<28} {source.type:<10} {str(source.enabled):<8} "
            f"{source.health:<9} {source.fail_count}"
        )
    print()


async def run_source(slug: str, use_cache: bool = True) -> int:
    """Run the named source once.

    Returns:
        Process exit code (0 on a successful run)
    """
    store = DealStore(async_session_factory)
    try:
        source = SourceSnapshot.from_model(await store.get_source_by_slug(slug))
    except NotFoundError as e:
        print(f"\nError: {e.message}")
        await list_sources(store)
        return 2

    factory = register_default_fetchers(FetcherFactory())
    cache = get_cache_service() if use_cache else None
    pipeline = IngestionPipeline(store, fetcher_factory=factory, cache=cache)

    print(f"\n{'='*60}")
    print(f"  Running {source.name} ({source.type})")
    print(f"  {source.endpoint}")
    print(f"{'='*60}\n")

    try:
        outcome = await pipeline.execute(source)
    finally:
        await factory.close()
        if cache is not None:
            await cache.close()

    print(f"  Status:     {outcome.status}")
    print(f"  Run:        {outcome.run_id}")
    print(f"  HTTP:       {outcome.http_status}")
    for name, value in outcome.stats.items():
        print(f"  {name:<28}{value}")
    if outcome.error:
        print(f"  Error:      {outcome.error}")
    if outcome.transition is not None:
        print(f"  Health:     {outcome.transition.health} (fail_count={outcome.transition.fail_count})")
    print()
    return 0 if outcome.succeeded else 1


async def main(args: argparse.Namespace) -> int:
    try:
        if args.list:
            await list_sources(DealStore(async_session_factory))
            return 0
        return await run_source(args.source, use_cache=not args.no_cache)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one ingestion pass for a source")
    parser.add_argument("--source", help="Source slug")
    parser.add_argument("--list", action="store_true", help="List registered sources")
    parser.add_argument("--no-cache", action="store_true", help="Skip deal card and feed cache updates")
    args = parser.parse_args()
    if not args.list and not args.source:
        parser.error("--source is required unless --list is given")
    sys.exit(asyncio.run(main(args)))

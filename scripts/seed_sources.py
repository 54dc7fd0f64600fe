"""Seed the sources table with the default deal feeds.

Existing slugs are left untouched, so the script is safe to re-run.
"""

import asyncio
import sys
import os

# Add backend to path so we can import orben modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from orben.core.exceptions import NotFoundError
from orben.db.session import async_session_factory, engine
from orben.models import Base
from orben.services.deal_store import DealStore

SOURCES = [
    {
        "name": "Slickdeals Frontpage",
        "slug": "slickdeals-frontpage",
        "type": "rss",
        "endpoint": "https://slickdeals.net/newsearch.php?mode=frontpage&searcharea=deals&searchin=first&rss=1",
        "poll_interval_minutes": 30,
        "config": {},
    },
    {
        "name": "DealNews",
        "slug": "dealnews",
        "type": "rss",
        "endpoint": "https://www.dealnews.com/?rss=1&sort=time",
        "poll_interval_minutes": 30,
        "config": {},
    },
    {
        "name": "Brads Deals",
        "slug": "bradsdeals",
        "type": "rss",
        "endpoint": "https://www.bradsdeals.com/shop/feeds/new-deals",
        "poll_interval_minutes": 60,
        "config": {},
    },
    {
        "name": "Woot",
        "slug": "woot",
        "type": "rss",
        "endpoint": "https://api.woot.com/1/sales/current.rss",
        "poll_interval_minutes": 60,
        "config": {"merchant": "Woot"},
    },
    {
        "name": "Manual Submissions",
        "slug": "manual",
        "type": "manual",
        "endpoint": None,
        "poll_interval_minutes": 30,
        "config": {},
    },
]


async def seed_sources() -> None:
    print(f"\n{'='*60}")
    print("  Seeding Sources")
    print(f"{'='*60}\n")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = DealStore(async_session_factory)
    added_count = 0
    skipped_count = 0

    for source_data in SOURCES:
        try:
            await store.get_source_by_slug(source_data["slug"])
        except NotFoundError:
            await store.create_source(**source_data)
            print(f"  Added source: {source_data['name']} ({source_data['type']})")
            added_count += 1
        else:
            print(f"  Source '{source_data['slug']}' already exists, skipping")
            skipped_count += 1

    print(f"\n{'='*60}")
    print(f"  Added: {added_count}  Skipped: {skipped_count}  Total: {len(SOURCES)}")
    print(f"{'='*60}\n")


async def main() -> None:
    try:
        await seed_sources()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

"""Delete cached universal-search results for specific queries.

Keys are recomputed from the query, provider and country, so only the
named searches are dropped and nothing else in Redis is scanned.

Usage:
    python scripts/flush_search_cache.py "airpods pro" "nintendo switch"
    python scripts/flush_search_cache.py --providers google,ebay --countries US,CA "lego"
    python scripts/flush_search_cache.py --file queries.txt
    python scripts/flush_search_cache.py --limits 20,50 --pages 1,2 "lego"
"""

import argparse
import asyncio
import sys
import os

# Add backend to path so we can import orben modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

import httpx

from orben.core.exceptions import CacheUnavailable
from orben.providers.factory import build_default_registry
from orben.services.budget_guard import BudgetGuard
from orben.services.cache_service import get_cache_service
from orben.services.search_service import SearchOrchestrator


def _split(value: str):
    return [part.strip() for part in value.split(",") if part.strip()] if value else None


async def flush(queries, providers=None, countries=None, limits=None, pages=None) -> int:
    cache = get_cache_service()
    async with httpx.AsyncClient() as client:
        orchestrator = SearchOrchestrator(
            registry=build_default_registry(client),
            budget_guard=BudgetGuard(),
            cache=cache,
        )
        try:
            result = await orchestrator.flush(
                queries, providers=providers, countries=countries, limits=limits, pages=pages,
            )
        except CacheUnavailable as e:
            print(f"Error: {e.message}")
            return 1
        finally:
            await cache.close()

    print(f"Checked {result.keys_checked} keys, deleted {result.keys_deleted}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Flush cached search results")
    parser.add_argument("queries", nargs="*", help="Search queries to flush")
    parser.add_argument("--file", help="File with one query per line")
    parser.add_argument("--providers", help="Comma-separated provider names (default: all)")
    parser.add_argument("--countries", help="Comma-separated country codes (default: US)")
    parser.add_argument("--limits", help="Comma-separated result limits (default: the search default)")
    parser.add_argument("--pages", help="Comma-separated page numbers (default: 1)")
    args = parser.parse_args()

    queries = list(args.queries)
    if args.file:
        with open(args.file, encoding="utf-8") as f:
            queries.extend(line.strip() for line in f if line.strip())
    if not queries:
        parser.error("no queries given")

    limits = [int(v) for v in _split(args.limits) or []] or None
    pages = [int(v) for v in _split(args.pages) or []] or None
    sys.exit(asyncio.run(flush(queries, _split(args.providers), _split(args.countries), limits, pages)))

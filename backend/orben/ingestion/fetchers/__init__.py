"""Fetcher implementations, one per source type."""

from orben.ingestion.fetchers.rss import RSSFetcher
from orben.ingestion.fetchers.affiliate import AffiliateFeedFetcher
from orben.ingestion.fetchers.api import APIFetcher

__all__ = ["RSSFetcher", "AffiliateFeedFetcher", "APIFetcher"]

"""Deal ingestion: fetchers, normalization, dedupe, scoring and scheduling."""

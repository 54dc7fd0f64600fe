"""SQLAlchemy models for Orben deals.

All models are imported here so metadata.create_all sees every table.
"""

from orben.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from orben.models.source import Source, SOURCE_TYPES
from orben.models.deal import Deal
from orben.models.ingestion_run import IngestionRun

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Source",
    "SOURCE_TYPES",
    "Deal",
    "IngestionRun",
]

"""Ingestion run ledger: one append-only row per poll attempt."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orben.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from orben.models.source import Source


class IngestionRun(UUIDPrimaryKeyMixin, Base):
    """Tracks one execution of a source's poll-and-ingest cycle.

    Rows are opened as ``running`` and closed exactly once as ``success`` or
    ``failure``. Once ``finished_at`` is set the row is never changed again.
    """

    __tablename__ = "ingestion_runs"

    source_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="running",
        index=True,
        comment="Status: 'running', 'success', 'failure'"
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)

    # Counts
    items_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_discarded_duplicate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Records that failed normalization or persistence"
    )

    # Failure details
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    source: Mapped["Source"] = relationship(back_populates="runs")

    def __repr__(self) -> str:
        return f"<IngestionRun(id={self.id}, source_id={self.source_id}, status='{self.status}')>"

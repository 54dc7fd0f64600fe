"""Source model: one row per pollable feed or API."""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy import JSON as JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orben.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from orben.models.deal import Deal
    from orben.models.ingestion_run import IngestionRun


SOURCE_TYPES = ("rss", "affiliate", "api", "manual")


class Source(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A pollable deal source.

    Sources are created by configuration and soft-disabled rather than deleted.
    Only the ingestion scheduler's outcome handling touches ``last_polled_at``,
    ``fail_count`` and ``health``.
    """

    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Source type: 'rss', 'affiliate', 'api' or 'manual'"
    )
    endpoint: Mapped[Optional[str]] = mapped_column(
        String(2000),
        nullable=True,
        comment="Feed URL or API URL template"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    poll_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # Schedule and health
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    health: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="healthy",
        comment="'healthy' or 'degraded'"
    )

    # Merchant override, default category, API item path, page size
    config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("fail_count >= 0", name="ck_sources_fail_count_non_negative"),
    )

    deals: Mapped[List["Deal"]] = relationship(back_populates="source")
    runs: Mapped[List["IngestionRun"]] = relationship(
        back_populates="source", cascade="all, delete-orphan"
    )

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(minutes=self.poll_interval_minutes)

    def __repr__(self) -> str:
        return f"<Source(slug='{self.slug}', type='{self.type}', enabled={self.enabled})>"

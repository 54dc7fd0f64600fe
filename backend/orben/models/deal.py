"""Canonical deal model."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orben.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from orben.models.source import Source


class Deal(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A deal produced by the ingestion pipeline.

    ``fingerprint`` identifies the same deal across re-polls and is unique
    among active deals. Price, score and ``updated_at`` are updated in place
    on later sightings; ``posted_at`` never changes after insert.
    """

    __tablename__ = "deals"

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("sources.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    source_item_id: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Source-provided guid, if any"
    )

    # Content
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    merchant: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general", index=True)

    # Pricing
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    discount_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Scoring and lifecycle
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        comment="'active' or 'expired'"
    )
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_deals_fingerprint_active",
            "fingerprint",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_deals_status_posted_score", "status", "posted_at", "score"),
        CheckConstraint("price >= 0", name="ck_deals_price_non_negative"),
        CheckConstraint(
            "original_price IS NULL OR original_price >= 0",
            name="ck_deals_original_price_non_negative"
        ),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_deals_score_range"),
    )

    source: Mapped[Optional["Source"]] = relationship(back_populates="deals")

    def __repr__(self) -> str:
        return f"<Deal(id={self.id}, title='{self.title[:50]}', price={self.price}, score={self.score})>"

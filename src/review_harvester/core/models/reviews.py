"""SQLAlchemy ORM model for harvested reviews.

Reviews are keyed by ``(target_id, review_id)``; the ingestor upserts on that
pair so replaying a batch never creates duplicates.  Rows outlive the task
that produced them and are removed only by a forced re-run of their target.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from review_harvester.core.models.base import Base


class Review(Base):
    """One customer review of a target.

    Attributes:
        id: Surrogate integer primary key.
        target_id: Target the review belongs to.
        review_id: Worker-supplied id or the content-derived fallback key.
        author: Display name of the reviewer.
        body: Review text.
        rating: Star rating, 0 when the source did not report one.
        published_at: Publication date exactly as reported by the source.
        ingested_at: Time of the most recent upsert of this row.
        created_at: Time the row was first inserted.
    """

    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    target_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    review_id: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    author: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    body: Mapped[str] = mapped_column(
        sa.Text,
        nullable=False,
        server_default=sa.text("''"),
    )
    rating: Mapped[int] = mapped_column(
        sa.SmallInteger,
        nullable=False,
        server_default=sa.text("0"),
    )
    published_at: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )

    __table_args__ = (
        sa.UniqueConstraint("target_id", "review_id", name="uq_reviews_target_review"),
        sa.Index("idx_reviews_target_rating", "target_id", "rating"),
        sa.Index("idx_reviews_target_ingested", "target_id", "ingested_at"),
        sa.Index("idx_reviews_target_created", "target_id", "created_at"),
    )

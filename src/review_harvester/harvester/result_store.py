"""Persistence of harvested reviews.

All functions take an open ``Session`` and leave the transaction to the
caller, so the ingestor can run its fence and its upsert in one commit and
the task store can purge a target inside its claim transaction.
"""

from __future__ import annotations

from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from review_harvester.core.models.reviews import Review
from review_harvester.harvester.config import NEGATIVE_RATING_MAX, POSITIVE_RATING_MIN

_KEY_CHUNK = 500

SORT_COLUMNS: dict[str, Any] = {
    "created_at": Review.created_at,
    "ingested_at": Review.ingested_at,
    "rating": Review.rating,
    "published_at": Review.published_at,
}


def _insert_for(session: Session):
    """Return the dialect-specific ``insert`` that supports ``ON CONFLICT``."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def existing_keys(session: Session, target_id: str, keys: list[str]) -> set[str]:
    """Return the subset of *keys* already stored for *target_id*."""
    found: set[str] = set()
    for start in range(0, len(keys), _KEY_CHUNK):
        chunk = keys[start : start + _KEY_CHUNK]
        found.update(
            session.scalars(
                sa.select(Review.review_id).where(
                    Review.target_id == target_id,
                    Review.review_id.in_(chunk),
                )
            )
        )
    return found


def upsert_reviews(session: Session, target_id: str, rows: list[dict[str, Any]]) -> int:
    """Insert or refresh *rows* for *target_id*; return how many were new.

    Each row carries ``review_id``, ``author``, ``body``, ``rating`` and
    ``published_at``.  Keys must be unique within *rows*.
    """
    if not rows:
        return 0

    keys = [row["review_id"] for row in rows]
    already = existing_keys(session, target_id, keys)

    insert = _insert_for(session)
    stmt = insert(Review).values([{**row, "target_id": target_id} for row in rows])
    stmt = stmt.on_conflict_do_update(
        index_elements=[Review.target_id, Review.review_id],
        set_={
            "author": stmt.excluded.author,
            "body": stmt.excluded.body,
            "rating": stmt.excluded.rating,
            "published_at": stmt.excluded.published_at,
            "ingested_at": sa.func.now(),
        },
    )
    session.execute(stmt)
    return len(set(keys) - already)


def count_reviews(session: Session, target_id: str) -> int:
    return session.scalar(
        sa.select(sa.func.count()).select_from(Review).where(Review.target_id == target_id)
    ) or 0


def purge_reviews(session: Session, target_id: str) -> int:
    """Delete every review of *target_id*; return the number removed."""
    result = session.execute(sa.delete(Review).where(Review.target_id == target_id))
    return result.rowcount or 0


def page_reviews(
    session: Session,
    target_id: str,
    *,
    page: int = 1,
    per_page: int = 50,
    sort: str = "created_at",
    order: str = "asc",
    rating: Optional[int] = None,
) -> tuple[list[Review], int]:
    """Return one page of reviews and the total matching the filter.

    The default is first-insertion order, which follows the order the worker
    wrote the records in.  Neither ``created_at`` nor the surrogate id changes
    when a record is replayed, and ties are broken on the id in the same
    direction, so pages are stable while ingestion continues.
    """
    column = SORT_COLUMNS.get(sort, Review.created_at)
    descending = order.lower() != "asc"

    where = [Review.target_id == target_id]
    if rating is not None:
        where.append(Review.rating == rating)

    total = session.scalar(sa.select(sa.func.count()).select_from(Review).where(*where)) or 0
    ordering = (column.desc(), Review.id.desc()) if descending else (column.asc(), Review.id.asc())
    rows = session.scalars(
        sa.select(Review)
        .where(*where)
        .order_by(*ordering)
        .offset(max(page - 1, 0) * per_page)
        .limit(per_page)
    ).all()
    return list(rows), total


def rating_statistics(session: Session, target_id: str) -> dict[str, Any]:
    """Aggregate stored ratings of *target_id*.

    Computed over ingested records only.  Unrated reviews (rating 0) count
    toward ``total`` and ``neutral`` but not toward the average.
    """
    buckets = {star: 0 for star in range(1, 6)}
    total = 0
    unrated = 0
    for star, count in session.execute(
        sa.select(Review.rating, sa.func.count())
        .where(Review.target_id == target_id)
        .group_by(Review.rating)
    ):
        total += count
        if star in buckets:
            buckets[star] += count
        else:
            unrated += count

    rated = sum(buckets.values())
    average = None
    if rated:
        average = round(sum(star * n for star, n in buckets.items()) / rated, 2)

    positive = sum(n for star, n in buckets.items() if star >= POSITIVE_RATING_MIN)
    negative = sum(n for star, n in buckets.items() if star <= NEGATIVE_RATING_MAX)
    return {
        "total": total,
        "average_rating": average,
        "by_rating": buckets,
        "positive": positive,
        "negative": negative,
        "neutral": total - positive - negative,
        "unrated": unrated,
    }

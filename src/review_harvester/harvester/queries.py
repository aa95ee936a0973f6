"""Read-only views over tasks and stored reviews.

These are what the HTTP routes return.  Statistics and listings come from
the stored reviews; ``expected_total`` is only ever reported as progress.
"""

from __future__ import annotations

from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from review_harvester.core.models.reviews import Review
from review_harvester.core.models.scraping import ScrapeTask
from review_harvester.core.task_status import ACTIVE_STATUSES, TaskStatus
from review_harvester.harvester.config import DEFAULT_PAGE_SIZE
from review_harvester.harvester.result_store import count_reviews, page_reviews, rating_statistics


def _active_task(session: Session, target_id: str) -> Optional[ScrapeTask]:
    return session.scalar(
        sa.select(ScrapeTask)
        .where(
            ScrapeTask.target_id == target_id,
            ScrapeTask.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        .limit(1)
    )


def _latest_task(session: Session, target_id: str, status: TaskStatus | None = None) -> Optional[ScrapeTask]:
    stmt = sa.select(ScrapeTask).where(ScrapeTask.target_id == target_id)
    if status is not None:
        stmt = stmt.where(ScrapeTask.status == status.value)
    return session.scalar(stmt.order_by(ScrapeTask.created_at.desc()).limit(1))


def target_status(session: Session, target_id: str) -> dict[str, Any]:
    """Summarise a target: its active and last completed task and stored count.

    ``target_metadata`` is taken from the active task when there is one,
    otherwise from the last completed task.
    """
    active = _active_task(session, target_id)
    completed = _latest_task(session, target_id, TaskStatus.COMPLETED)
    latest = _latest_task(session, target_id)

    metadata = None
    for task in (active, completed):
        if task is not None and task.target_metadata:
            metadata = task.target_metadata
            break

    return {
        "target_id": target_id,
        "stored_reviews": count_reviews(session, target_id),
        "is_parsing": active is not None,
        "is_complete": active is None and latest is not None and latest.status == TaskStatus.COMPLETED.value,
        "target_metadata": metadata,
        "active_task": active,
        "last_completed_task": completed,
        "latest_task": latest,
    }


def list_reviews(
    session: Session,
    target_id: str,
    *,
    page: int = 1,
    per_page: int = DEFAULT_PAGE_SIZE,
    sort: str = "created_at",
    order: str = "asc",
    rating: Optional[int] = None,
) -> dict[str, Any]:
    """Return one page of a target's reviews with paging info."""
    rows, total = page_reviews(
        session,
        target_id,
        page=page,
        per_page=per_page,
        sort=sort,
        order=order,
        rating=rating,
    )
    return {
        "target_id": target_id,
        "items": rows,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page if per_page else 0,
    }


def review_statistics(session: Session, target_id: str) -> dict[str, Any]:
    return {"target_id": target_id, **rating_statistics(session, target_id)}


def get_review(session: Session, target_id: str, review_id: str) -> Optional[Review]:
    return session.scalar(
        sa.select(Review).where(Review.target_id == target_id, Review.review_id == review_id)
    )

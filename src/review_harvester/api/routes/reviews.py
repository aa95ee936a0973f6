"""FastAPI router for scrape tasks and harvested reviews.

Routes:
    POST   /scrapes                          request a scrape (optionally forced)
    POST   /scrapes/retarget                 move active work to another target
    GET    /tasks/{task_id}                  task detail + progress counters
    POST   /tasks/{task_id}/cancel           cancel an active task
    GET    /targets/{target_id}              active / last completed task, stored count
    GET    /targets/{target_id}/reviews      paginated reviews
    GET    /targets/{target_id}/statistics   rating aggregates

Handlers are plain ``def`` functions; FastAPI runs them in its thread pool
because the stores use synchronous sessions.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from review_harvester.api.dependencies import PaginationParams, get_controller, get_pagination
from review_harvester.core.database import get_db
from review_harvester.core.exceptions import InvalidTargetError, TaskNotFoundError
from review_harvester.core.models.scraping import ScrapeTask
from review_harvester.core.schemas.scraping import (
    RetargetRequest,
    ReviewPage,
    ReviewStatistics,
    ScrapeRequest,
    ScrapeTaskRead,
    TargetStatusRead,
)
from review_harvester.harvester import queries
from review_harvester.harvester.controller import SupersessionController

logger = structlog.get_logger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


def _get_task_or_404(task_id: uuid.UUID, db: Session) -> ScrapeTask:
    task = db.get(ScrapeTask, task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scrape task not found.")
    return task


def _invalid_target(exc: InvalidTargetError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ---------------------------------------------------------------------------
# Task creation and supersession
# ---------------------------------------------------------------------------


@router.post("/scrapes", response_model=ScrapeTaskRead, status_code=status.HTTP_202_ACCEPTED)
def request_scrape(
    payload: ScrapeRequest,
    controller: Annotated[SupersessionController, Depends(get_controller)],
) -> ScrapeTask:
    """Start scraping a target, or return its active task."""
    try:
        task = controller.request_scrape(payload.url, force=payload.force)
    except InvalidTargetError as exc:
        raise _invalid_target(exc) from exc
    logger.info("scrape_requested", task_id=str(task.id), target_id=task.target_id, force=payload.force)
    return task


@router.post("/scrapes/retarget", response_model=ScrapeTaskRead, status_code=status.HTTP_202_ACCEPTED)
def retarget(
    payload: RetargetRequest,
    controller: Annotated[SupersessionController, Depends(get_controller)],
) -> ScrapeTask:
    """Cancel the old target's active work and start on the new target."""
    try:
        task = controller.retarget(payload.old_url, payload.new_url)
    except InvalidTargetError as exc:
        raise _invalid_target(exc) from exc
    logger.info("scrape_retargeted", task_id=str(task.id), target_id=task.target_id)
    return task


@router.get("/tasks/{task_id}", response_model=ScrapeTaskRead)
def get_task(
    task_id: uuid.UUID,
    db: Annotated[Session, Depends(get_db)],
) -> ScrapeTask:
    return _get_task_or_404(task_id, db)


@router.post("/tasks/{task_id}/cancel", response_model=ScrapeTaskRead)
def cancel_task(
    task_id: uuid.UUID,
    controller: Annotated[SupersessionController, Depends(get_controller)],
) -> ScrapeTask:
    """Cancel an active task.  Terminal tasks are returned unchanged."""
    try:
        return controller.cancel(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scrape task not found.") from exc


# ---------------------------------------------------------------------------
# Target views
# ---------------------------------------------------------------------------


@router.get("/targets/{target_id}", response_model=TargetStatusRead)
def get_target_status(
    target_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    return queries.target_status(db, target_id)


@router.get("/targets/{target_id}/reviews", response_model=ReviewPage)
def list_reviews(
    target_id: str,
    db: Annotated[Session, Depends(get_db)],
    pagination: Annotated[PaginationParams, Depends(get_pagination)],
    sort: Literal["created_at", "ingested_at", "rating", "published_at"] = "created_at",
    order: Literal["asc", "desc"] = "asc",
    rating: Annotated[Optional[int], Query(ge=0, le=5)] = None,
) -> dict:
    """Return stored reviews of a target, in first-ingestion order by default."""
    return queries.list_reviews(
        db,
        target_id,
        page=pagination.page,
        per_page=pagination.per_page,
        sort=sort,
        order=order,
        rating=rating,
    )


@router.get("/targets/{target_id}/statistics", response_model=ReviewStatistics)
def review_statistics(
    target_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    return queries.review_statistics(db, target_id)

"""Pydantic request/response schemas for scrape tasks and reviews.

Used by the API routes for validation, serialisation, and OpenAPI
documentation generation.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScrapeRequest(BaseModel):
    """Payload for requesting a scrape.

    Attributes:
        url: Listing URL (or bare numeric target id).
        force: Discard the target's active task and stored reviews and start over.
    """

    url: str = Field(min_length=1, max_length=1024)
    force: bool = False


class RetargetRequest(BaseModel):
    """Payload for moving active work from one target to another."""

    old_url: str = Field(min_length=1, max_length=1024)
    new_url: str = Field(min_length=1, max_length=1024)


class ScrapeTaskRead(BaseModel):
    """Full representation of a persisted scrape task."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    target_id: str
    source_url: str
    status: str
    status_reason: Optional[str]
    phase: str
    last_error: Optional[str]
    anomaly: bool

    expected_total: int
    parsed_total: int
    current_batch: int
    total_batches: int
    target_metadata: Optional[dict[str, Any]]
    retry_count: int

    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


class ReviewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: str
    author: str
    body: str
    rating: int
    published_at: Optional[str]
    ingested_at: datetime


class ReviewPage(BaseModel):
    """One page of a target's reviews."""

    target_id: str
    items: List[ReviewRead]
    total: int
    page: int
    per_page: int
    pages: int


class ReviewStatistics(BaseModel):
    """Aggregates over a target's stored reviews.

    ``by_rating`` maps star values 1–5 to counts.  ``positive`` is 4–5 stars,
    ``negative`` 1–2 stars, and ``neutral`` everything else including
    unrated reviews.
    """

    target_id: str
    total: int
    average_rating: Optional[float]
    by_rating: dict[int, int]
    positive: int
    negative: int
    neutral: int
    unrated: int


class TargetStatusRead(BaseModel):
    """What is known about a target right now."""

    target_id: str
    stored_reviews: int
    is_parsing: bool
    is_complete: bool
    target_metadata: Optional[dict[str, Any]]
    active_task: Optional[ScrapeTaskRead]
    last_completed_task: Optional[ScrapeTaskRead]
    latest_task: Optional[ScrapeTaskRead]

"""FastAPI dependency injection providers.

Provides the supersession controller and pagination parameters.  Tests
override :func:`get_controller` and ``core.database.get_db`` through
``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, status

from review_harvester.harvester.config import DEFAULT_PAGE_SIZE
from review_harvester.harvester.controller import SupersessionController


def get_controller() -> SupersessionController:
    """Return a controller bound to the application database."""
    return SupersessionController()


# ---------------------------------------------------------------------------
# Pagination parameters
# ---------------------------------------------------------------------------


@dataclass
class PaginationParams:
    """Offset-pagination parameters shared across list endpoints.

    Attributes:
        page: 1-based page number.
        per_page: Number of records to return per page (1–200).
    """

    page: int
    per_page: int


def get_pagination(
    page: int = 1,
    per_page: int = DEFAULT_PAGE_SIZE,
) -> PaginationParams:
    """Parse and validate pagination query parameters.

    Raises:
        HTTPException 422: If ``page`` is below 1 or ``per_page`` is outside 1–200.
    """
    if page < 1:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="page must be 1 or greater.",
        )
    if not 1 <= per_page <= 200:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="per_page must be between 1 and 200.",
        )
    return PaginationParams(page=page, per_page=per_page)

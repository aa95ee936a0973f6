"""SQLAlchemy ORM models for Review Harvester.

All models are imported here so that Alembic autogenerate can discover them
via ``Base.metadata`` and application code can write
``from review_harvester.core.models import ScrapeTask``.
"""

from __future__ import annotations

from review_harvester.core.models.base import Base, JSONType, TimestampMixin
from review_harvester.core.models.reviews import Review
from review_harvester.core.models.scraping import ScrapeTask

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "Review",
    "ScrapeTask",
]

"""Factory Boy factories for test data generation.

Available factories
-------------------
WorkerReviewFactory     review record dict as written by the scraping worker
AnonymousReviewFactory  worker record without a native id or author
WorkerMetaFactory       ``{prefix}_meta.json`` payload dict

Artifact helpers
----------------
write_page      write ``{prefix}_page_{n}.json`` into a drop directory
write_meta      write ``{prefix}_meta.json`` into a drop directory
"""

from __future__ import annotations

from tests.factories.artifacts import (
    AnonymousReviewFactory,
    WorkerMetaFactory,
    WorkerReviewFactory,
    write_meta,
    write_page,
)

__all__ = [
    "AnonymousReviewFactory",
    "WorkerMetaFactory",
    "WorkerReviewFactory",
    "write_meta",
    "write_page",
]

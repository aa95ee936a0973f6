"""Idempotent merge of worker records into the result store.

Every record gets a stable key: the worker-supplied ``id`` (or
``review_id``) when present, otherwise ``"r_" + md5(author + body)``.  The
key is unique per target, so replaying a batch, or re-reading a page file
the worker rewrote, updates rows in place instead of duplicating them.

When ingesting on behalf of a supervised task the write is *fenced*: the
upsert shares a transaction with an ``UPDATE ... WHERE status = 'running'``
on the task row.  A supervisor whose task was cancelled or superseded
therefore cannot write records after the supersession committed, which
keeps a forced re-run's purge from being undone by a straggler.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Any, Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.core.exceptions import TaskPreemptedError
from review_harvester.core.models.scraping import ScrapeTask
from review_harvester.core.task_status import TaskStatus
from review_harvester.harvester.config import (
    ANONYMOUS_AUTHOR,
    FALLBACK_KEY_PREFIX,
    MAX_AUTHOR_LENGTH,
    MAX_PUBLISHED_AT_LENGTH,
    MAX_REVIEW_ID_LENGTH,
)
from review_harvester.harvester.result_store import count_reviews, upsert_reviews

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Record normalisation
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _rating(value: Any) -> int:
    try:
        rating = int(float(value))
    except (TypeError, ValueError):
        return 0
    return min(max(rating, 0), 5)


def compute_record_key(record: dict[str, Any]) -> Optional[str]:
    """Return the stable key of *record*, or None if it has none.

    The fallback is derived from content only, never from time or process
    state, so the same review gets the same key in every run.
    """
    native = record.get("id")
    if native is None or _text(native) == "":
        native = record.get("review_id")
    if native is not None and _text(native) != "":
        return _text(native)[:MAX_REVIEW_ID_LENGTH]

    author = _text(record.get("author")) or ANONYMOUS_AUTHOR
    body = _text(record.get("text", record.get("body")))
    if not body:
        return None
    digest = hashlib.md5(f"{author}{body}".encode("utf-8")).hexdigest()  # noqa: S324
    return f"{FALLBACK_KEY_PREFIX}{digest}"


def normalize_record(record: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Map a worker record onto ``reviews`` columns; None if unusable."""
    key = compute_record_key(record)
    if key is None:
        return None
    published = _text(record.get("published_at") or record.get("date"))
    return {
        "review_id": key,
        "author": (_text(record.get("author")) or ANONYMOUS_AUTHOR)[:MAX_AUTHOR_LENGTH],
        "body": _text(record.get("text", record.get("body"))),
        "rating": _rating(record.get("rating")),
        "published_at": published[:MAX_PUBLISHED_AT_LENGTH] or None,
    }


def normalize_records(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalise and de-duplicate *records*; the last occurrence of a key wins."""
    by_key: dict[str, dict[str, Any]] = {}
    skipped = 0
    for record in records:
        row = normalize_record(record)
        if row is None:
            skipped += 1
            continue
        by_key[row["review_id"]] = row
    if skipped:
        logger.debug("ingestor: skipped %d records without id or text", skipped)
    return list(by_key.values())


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class Ingestor:
    """Merge record batches into the result store."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    def ingest(
        self,
        target_id: str,
        records: Iterable[dict[str, Any]],
        *,
        fence_task_id: uuid.UUID | None = None,
    ) -> int:
        """Upsert *records* for *target_id* and return the number newly created.

        Args:
            target_id: Target the records belong to.
            records: Raw worker records.
            fence_task_id: When given, write only while this task is running.

        Raises:
            TaskPreemptedError: The fenced task is no longer running; nothing
                was written.
        """
        rows = normalize_records(records)
        if not rows:
            return 0

        from review_harvester.core.database import get_sync_session  # noqa: PLC0415

        with get_sync_session(self._session_factory) as session:
            if fence_task_id is not None:
                fenced = session.execute(
                    sa.update(ScrapeTask)
                    .where(
                        ScrapeTask.id == fence_task_id,
                        ScrapeTask.status == TaskStatus.RUNNING.value,
                    )
                    .values(updated_at=sa.func.now())
                )
                if fenced.rowcount == 0:
                    session.rollback()
                    raise TaskPreemptedError(str(fence_task_id))

            created = upsert_reviews(session, target_id, rows)
            session.commit()

        logger.debug(
            "ingestor: target=%s rows=%d created=%d", target_id, len(rows), created
        )
        return created

    def stored_count(self, target_id: str) -> int:
        """Return how many distinct reviews are stored for *target_id*."""
        from review_harvester.core.database import get_sync_session  # noqa: PLC0415

        with get_sync_session(self._session_factory) as session:
            return count_reviews(session, target_id)

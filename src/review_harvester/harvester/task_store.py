"""Durable scrape task records.

Every status change is a compare-and-set against the stored status, checked
against the lifecycle in :mod:`review_harvester.core.task_status`.  Whoever
commits first wins; the loser observes ``False`` and must not overwrite the
winner's outcome.  This is what lets an external cancellation beat a
supervisor that is about to mark its task completed.

The at-most-one-active-task rule is enforced by the partial unique index on
``scrape_tasks(target_id)``; :meth:`TaskStore.claim` relies on it instead of
a check-then-insert.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.core.exceptions import TaskNotFoundError
from review_harvester.core.models.scraping import ScrapeTask
from review_harvester.core.task_status import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TaskStatus,
    ensure_transition,
)
from review_harvester.harvester.config import MAX_PHASE_LENGTH, REASON_FORCED_RERUN
from review_harvester.harvester.result_store import purge_reviews

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]
_CLAIM_ATTEMPTS = 3


@dataclass
class ClaimResult:
    """Outcome of :meth:`TaskStore.claim`.

    Attributes:
        task: The newly created task, or the active task that blocked creation.
        created: Whether *task* was created by this call.
        displaced: Tasks a forced claim moved out of the active set.
        purged: Reviews a forced claim deleted.
    """

    task: ScrapeTask
    created: bool
    displaced: list[ScrapeTask] = field(default_factory=list)
    purged: int = 0


class TaskStore:
    """Read and mutate ``scrape_tasks`` rows.

    Args:
        session_factory: Sessionmaker to use; the application's
            ``SyncSessionLocal`` when omitted.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        from review_harvester.core.database import get_sync_session  # noqa: PLC0415

        with get_sync_session(self._session_factory) as session:
            yield session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, task_id: uuid.UUID) -> Optional[ScrapeTask]:
        task_id = as_task_id(task_id)
        with self.session() as session:
            return session.get(ScrapeTask, task_id)

    def require(self, task_id: uuid.UUID) -> ScrapeTask:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task

    def get_status(self, task_id: uuid.UUID) -> Optional[TaskStatus]:
        task_id = as_task_id(task_id)
        with self.session() as session:
            status = session.scalar(sa.select(ScrapeTask.status).where(ScrapeTask.id == task_id))
        return TaskStatus(status) if status is not None else None

    def get_active(self, target_id: str) -> Optional[ScrapeTask]:
        """Return the active task of *target_id*, if any."""
        with self.session() as session:
            return session.scalar(
                sa.select(ScrapeTask)
                .where(ScrapeTask.target_id == target_id, ScrapeTask.status.in_(_ACTIVE_VALUES))
                .limit(1)
            )

    def list_active(self, target_id: str | None = None) -> list[ScrapeTask]:
        stmt = sa.select(ScrapeTask).where(ScrapeTask.status.in_(_ACTIVE_VALUES))
        if target_id is not None:
            stmt = stmt.where(ScrapeTask.target_id == target_id)
        with self.session() as session:
            return list(session.scalars(stmt.order_by(ScrapeTask.created_at)))

    def get_last_completed(self, target_id: str) -> Optional[ScrapeTask]:
        with self.session() as session:
            return session.scalar(
                sa.select(ScrapeTask)
                .where(
                    ScrapeTask.target_id == target_id,
                    ScrapeTask.status == TaskStatus.COMPLETED.value,
                )
                .order_by(ScrapeTask.completed_at.desc())
                .limit(1)
            )

    def known_targets(self) -> list[tuple[str, str]]:
        """Return ``(target_id, source_url)`` of every target worth refreshing.

        The source URL comes from each target's most recent task.  Targets
        whose most recent task was cancelled (e.g. retargeted away from) are
        left out.
        """
        ranked = sa.select(
            ScrapeTask.target_id,
            ScrapeTask.source_url,
            ScrapeTask.status,
            sa.func.row_number()
            .over(partition_by=ScrapeTask.target_id, order_by=ScrapeTask.created_at.desc())
            .label("rank"),
        ).subquery()
        stmt = (
            sa.select(ranked.c.target_id, ranked.c.source_url)
            .where(ranked.c.rank == 1, ranked.c.status != TaskStatus.CANCELLED.value)
            .order_by(ranked.c.target_id)
        )
        with self.session() as session:
            return [(row.target_id, row.source_url) for row in session.execute(stmt)]

    def find_stale(self, cutoff: datetime) -> list[ScrapeTask]:
        """Return active tasks that started (or were queued) before *cutoff*."""
        started = sa.func.coalesce(ScrapeTask.started_at, ScrapeTask.created_at)
        with self.session() as session:
            return list(
                session.scalars(
                    sa.select(ScrapeTask).where(
                        ScrapeTask.status.in_(_ACTIVE_VALUES),
                        started < cutoff,
                    )
                )
            )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def claim(
        self,
        target_id: str,
        source_url: str,
        *,
        force: bool = False,
        target_metadata: dict[str, Any] | None = None,
        expected_total: int = 0,
        total_batches: int = 0,
    ) -> ClaimResult:
        """Create a pending task for *target_id* unless one is already active.

        Without *force* an existing active task is returned untouched
        (``created=False``).  With *force* every active task of the target is
        marked failed and every stored review of the target deleted, in the
        same transaction as the insert.

        Two concurrent non-forced claims for one target produce exactly one
        task; the unique index rejects the second insert and the loser
        returns the winner's task.
        """
        for attempt in range(1, _CLAIM_ATTEMPTS + 1):
            with self.session() as session:
                displaced: list[ScrapeTask] = []
                purged = 0
                retry_count = 0
                now = datetime.now(timezone.utc)

                if force:
                    rows = list(
                        session.scalars(
                            sa.select(ScrapeTask)
                            .where(
                                ScrapeTask.target_id == target_id,
                                ScrapeTask.status.in_(_ACTIVE_VALUES),
                            )
                            .with_for_update()
                        )
                    )
                    displaced = [_snapshot(old) for old in rows]
                    for old in rows:
                        old.status = TaskStatus.FAILED.value
                        old.status_reason = REASON_FORCED_RERUN
                        old.completed_at = now
                    session.flush()
                    purged = purge_reviews(session, target_id)
                    previous = session.scalar(
                        sa.select(sa.func.max(ScrapeTask.retry_count)).where(
                            ScrapeTask.target_id == target_id
                        )
                    )
                    retry_count = (previous + 1) if previous is not None else 0

                task = ScrapeTask(
                    id=uuid.uuid4(),
                    target_id=target_id,
                    source_url=source_url,
                    status=TaskStatus.PENDING.value,
                    phase="queued",
                    target_metadata=target_metadata,
                    expected_total=expected_total,
                    total_batches=total_batches,
                    parsed_total=0,
                    current_batch=0,
                    anomaly=False,
                    retry_count=retry_count,
                    created_at=now,
                    updated_at=now,
                )
                session.add(task)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.debug(
                        "task_store: claim for %s lost a race (attempt %d)", target_id, attempt
                    )
                else:
                    if displaced:
                        logger.info(
                            "task_store: forced claim for %s displaced %d task(s), purged %d reviews",
                            target_id,
                            len(displaced),
                            purged,
                        )
                    return ClaimResult(task=task, created=True, displaced=displaced, purged=purged)

            if not force:
                existing = self.get_active(target_id)
                if existing is not None:
                    return ClaimResult(task=existing, created=False)

        raise RuntimeError(f"Could not claim target {target_id} after {_CLAIM_ATTEMPTS} attempts")

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def transition(
        self,
        task_id: uuid.UUID,
        to: TaskStatus,
        *,
        expected: TaskStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Move *task_id* to *to*, optionally only from *expected*.

        Extra keyword arguments are written in the same UPDATE.  Terminal
        transitions stamp ``completed_at`` unless it is given.

        Returns:
            False when the stored status differs from *expected*, or changed
            between the read and the write.

        Raises:
            TaskNotFoundError: No such task.
            InvalidTransitionError: The lifecycle forbids the move.
        """
        task_id = as_task_id(task_id)
        to = TaskStatus(to)
        with self.session() as session:
            current = session.scalar(sa.select(ScrapeTask.status).where(ScrapeTask.id == task_id))
            if current is None:
                raise TaskNotFoundError(str(task_id))
            if expected is not None and current != TaskStatus(expected).value:
                return False
            ensure_transition(current, to)

            values: dict[str, Any] = {"status": to.value, **fields}
            if to in TERMINAL_STATUSES:
                values.setdefault("completed_at", datetime.now(timezone.utc))
            result = session.execute(
                sa.update(ScrapeTask)
                .where(ScrapeTask.id == task_id, ScrapeTask.status == current)
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                return False
            session.commit()
        logger.debug("task_store: task %s %s -> %s", task_id, current, to.value)
        return True

    def supersede(
        self,
        target_id: str,
        to: TaskStatus,
        reason: str,
    ) -> list[ScrapeTask]:
        """Move every active task of *target_id* to terminal status *to*.

        Returns the tasks that were moved, as they were before the change.
        """
        to = TaskStatus(to)
        now = datetime.now(timezone.utc)
        with self.session() as session:
            displaced = list(
                session.scalars(
                    sa.select(ScrapeTask)
                    .where(
                        ScrapeTask.target_id == target_id,
                        ScrapeTask.status.in_(_ACTIVE_VALUES),
                    )
                    .with_for_update()
                )
            )
            snapshots = [_snapshot(task) for task in displaced]
            for task in displaced:
                ensure_transition(task.status, to)
                task.status = to.value
                task.status_reason = reason
                task.completed_at = now
            session.commit()
        return snapshots

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def record_progress(
        self,
        task_id: uuid.UUID,
        *,
        parsed_total: int | None = None,
        current_batch: int | None = None,
        expected_total: int | None = None,
        total_batches: int | None = None,
        target_metadata: dict[str, Any] | None = None,
        phase: str | None = None,
    ) -> bool:
        """Apply progress reported while the task runs.

        Counters never move backwards.  Nothing is written unless the task is
        ``running`` or ``paused``; returns False in that case.
        """
        task_id = as_task_id(task_id)
        with self.session() as session:
            task = session.scalar(
                sa.select(ScrapeTask).where(ScrapeTask.id == task_id).with_for_update()
            )
            if task is None:
                raise TaskNotFoundError(str(task_id))
            if task.status not in (TaskStatus.RUNNING.value, TaskStatus.PAUSED.value):
                return False

            for name, value in (
                ("parsed_total", parsed_total),
                ("current_batch", current_batch),
                ("expected_total", expected_total),
                ("total_batches", total_batches),
            ):
                if value is not None and value > getattr(task, name):
                    setattr(task, name, value)
            if target_metadata:
                task.target_metadata = target_metadata
            if phase:
                task.phase = phase[:MAX_PHASE_LENGTH]
            session.commit()
        return True

    def set_worker(self, task_id: uuid.UUID, pid: int | None, host: str | None = None) -> None:
        """Record the worker process of *task_id* and the host it runs on."""
        task_id = as_task_id(task_id)
        with self.session() as session:
            session.execute(
                sa.update(ScrapeTask)
                .where(ScrapeTask.id == task_id)
                .values(worker_pid=pid, worker_host=host if pid else None)
            )
            session.commit()

    def set_celery_task_id(self, task_id: uuid.UUID, celery_task_id: str) -> None:
        task_id = as_task_id(task_id)
        with self.session() as session:
            session.execute(
                sa.update(ScrapeTask)
                .where(ScrapeTask.id == task_id)
                .values(celery_task_id=celery_task_id)
            )
            session.commit()


def as_task_id(value: uuid.UUID | str) -> uuid.UUID:
    """Coerce a task id received over the wire (Celery, HTTP) to a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _snapshot(task: ScrapeTask) -> ScrapeTask:
    """Detached copy of *task* with the columns callers act on."""
    return ScrapeTask(
        id=task.id,
        target_id=task.target_id,
        source_url=task.source_url,
        status=task.status,
        worker_pid=task.worker_pid,
        worker_host=task.worker_host,
        celery_task_id=task.celery_task_id,
    )

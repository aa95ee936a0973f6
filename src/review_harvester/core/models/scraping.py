"""SQLAlchemy ORM model for scrape tasks.

A ``ScrapeTask`` is one attempt to harvest the reviews of one target.  Its
``status`` column follows the lifecycle in
:mod:`review_harvester.core.task_status`; the partial unique index
``uq_scrape_tasks_active_target`` guarantees that a target never has more
than one task in an active state.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from review_harvester.core.models.base import Base, JSONType, TimestampMixin

ACTIVE_STATUS_PREDICATE = "status IN ('pending', 'running', 'paused')"


class ScrapeTask(Base, TimestampMixin):
    """A single scrape of one target's reviews.

    Attributes:
        id: UUID primary key.
        target_id: Stable identifier derived from the source URL.
        source_url: URL the operator submitted.
        status: Lifecycle state (see ``TaskStatus``).
        status_reason: Why the task left the active set, when something other
            than its own supervisor decided it (supersession, reaper).
        expected_total: Number of reviews the target claims to have.
        parsed_total: Distinct reviews stored for the target so far.
        current_batch: Number of batch artifacts processed.
        total_batches: Batches the worker is expected to write.
        phase: Free-form sub-phase reported by the worker.
        target_metadata: ``{name, rating, review_count}`` snapshot.
        last_error: Operator-visible error message.
        anomaly: Set when the worker produced nothing for a non-empty target.
        retry_count: Forced re-runs that preceded this task for the target.
        celery_task_id: ID of the queued supervisor job.
        worker_pid: PID of the running worker process.
        worker_host: Host name of the machine running the worker; signals are
            only sent to ``worker_pid`` from that host.
        started_at: When the supervisor picked the task up.
        completed_at: When the task reached a terminal state.
    """

    __tablename__ = "scrape_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    target_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    source_url: Mapped[str] = mapped_column(sa.String(1024), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'pending'"),
    )
    status_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    phase: Mapped[str] = mapped_column(
        sa.String(30),
        nullable=False,
        server_default=sa.text("'queued'"),
    )
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    anomaly: Mapped[bool] = mapped_column(
        sa.Boolean,
        nullable=False,
        server_default=sa.false(),
    )
    retry_count: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    celery_task_id: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    worker_pid: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    worker_host: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    # Progress counters
    expected_total: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    parsed_total: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    current_batch: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    total_batches: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    target_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        sa.Index("idx_scrape_tasks_target_id", "target_id"),
        sa.Index("idx_scrape_tasks_status", "status"),
        sa.Index(
            "uq_scrape_tasks_active_target",
            "target_id",
            unique=True,
            postgresql_where=sa.text(ACTIVE_STATUS_PREDICATE),
            sqlite_where=sa.text(ACTIVE_STATUS_PREDICATE),
        ),
    )

    def __repr__(self) -> str:
        return f"<ScrapeTask {self.id} target={self.target_id} status={self.status}>"

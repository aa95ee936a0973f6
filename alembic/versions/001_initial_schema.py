"""Create scrape_tasks and reviews.

``scrape_tasks`` carries a partial unique index on ``target_id`` restricted
to active statuses, which is what makes task creation a transactional claim.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE = "status IN ('pending', 'running', 'paused')"


def upgrade() -> None:
    """Create both tables and their indexes."""
    op.create_table(
        "scrape_tasks",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("target_id", sa.String(64), nullable=False),
        sa.Column("source_url", sa.String(1024), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("phase", sa.String(30), nullable=False, server_default=sa.text("'queued'")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("anomaly", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("celery_task_id", sa.String(255), nullable=True),
        sa.Column("worker_pid", sa.Integer(), nullable=True),
        sa.Column("expected_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("parsed_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_batch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_batches", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "target_metadata",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=True,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_scrape_tasks_target_id", "scrape_tasks", ["target_id"])
    op.create_index("idx_scrape_tasks_status", "scrape_tasks", ["status"])
    op.create_index(
        "uq_scrape_tasks_active_target",
        "scrape_tasks",
        ["target_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE),
        sqlite_where=sa.text(_ACTIVE),
    )

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("target_id", sa.String(64), nullable=False),
        sa.Column("review_id", sa.String(128), nullable=False),
        sa.Column("author", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("rating", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("published_at", sa.String(64), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("target_id", "review_id", name="uq_reviews_target_review"),
    )
    op.create_index("idx_reviews_target_rating", "reviews", ["target_id", "rating"])
    op.create_index("idx_reviews_target_ingested", "reviews", ["target_id", "ingested_at"])


def downgrade() -> None:
    """Drop both tables."""
    op.drop_index("idx_reviews_target_ingested", table_name="reviews")
    op.drop_index("idx_reviews_target_rating", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("uq_scrape_tasks_active_target", table_name="scrape_tasks")
    op.drop_index("idx_scrape_tasks_status", table_name="scrape_tasks")
    op.drop_index("idx_scrape_tasks_target_id", table_name="scrape_tasks")
    op.drop_table("scrape_tasks")

"""Add worker_host to scrape_tasks and a first-ingestion index to reviews.

``worker_host`` records which machine started a task's worker so that
supersession only signals ``worker_pid`` from that machine.  The
``(target_id, created_at)`` index backs the default review listing order,
which does not move when a record is re-ingested.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add scrape_tasks.worker_host (nullable) and idx_reviews_target_created."""
    op.add_column(
        "scrape_tasks",
        sa.Column("worker_host", sa.String(255), nullable=True),
    )
    op.create_index("idx_reviews_target_created", "reviews", ["target_id", "created_at"])


def downgrade() -> None:
    """Drop idx_reviews_target_created and scrape_tasks.worker_host."""
    op.drop_index("idx_reviews_target_created", table_name="reviews")
    op.drop_column("scrape_tasks", "worker_host")

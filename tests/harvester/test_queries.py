"""Tests for review listings, statistics and target summaries."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.core.models.reviews import Review
from review_harvester.core.task_status import TaskStatus
from review_harvester.harvester import queries
from review_harvester.harvester.ingestor import Ingestor
from review_harvester.harvester.result_store import purge_reviews
from review_harvester.harvester.task_store import TaskStore
from tests.factories import WorkerReviewFactory

_URL = "https://yandex.ru/maps/org/kofeynya/42/"


def _ingest_ratings(ingestor: Ingestor, ratings: list[int], target_id: str = "42") -> None:
    ingestor.ingest(
        target_id,
        [WorkerReviewFactory.build(id=str(i), rating=r) for i, r in enumerate(ratings, start=1)],
    )


class TestReviewStatistics:
    def test_aggregates_over_stored_reviews(self, ingestor: Ingestor, db_session: Session) -> None:
        _ingest_ratings(ingestor, [5, 5, 4, 3, 2, 1, 0])

        stats = queries.review_statistics(db_session, "42")

        assert stats["target_id"] == "42"
        assert stats["total"] == 7
        assert stats["by_rating"] == {1: 1, 2: 1, 3: 1, 4: 1, 5: 2}
        assert stats["positive"] == 3
        assert stats["negative"] == 2
        assert stats["neutral"] == 2
        assert stats["unrated"] == 1
        assert stats["average_rating"] == round(20 / 6, 2)

    def test_empty_target(self, db_session: Session) -> None:
        stats = queries.review_statistics(db_session, "404")

        assert stats["total"] == 0
        assert stats["average_rating"] is None
        assert stats["by_rating"] == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}


class TestListReviews:
    def test_pages_cover_every_review_once(self, ingestor: Ingestor, db_session: Session) -> None:
        _ingest_ratings(ingestor, [5] * 23)

        collected: list[str] = []
        for page in (1, 2, 3):
            listing = queries.list_reviews(db_session, "42", page=page, per_page=10)
            collected.extend(r.review_id for r in listing["items"])

        assert listing["total"] == 23
        assert listing["pages"] == 3
        assert len(collected) == 23
        assert len(set(collected)) == 23

    def test_rating_filter_and_sort(self, ingestor: Ingestor, db_session: Session) -> None:
        _ingest_ratings(ingestor, [1, 5, 3, 5, 2])

        five_star = queries.list_reviews(db_session, "42", rating=5)
        ascending = queries.list_reviews(db_session, "42", sort="rating", order="asc")

        assert five_star["total"] == 2
        assert {r.rating for r in five_star["items"]} == {5}
        assert [r.rating for r in ascending["items"]] == [1, 2, 3, 5, 5]

    def test_replayed_record_keeps_its_position(
        self, ingestor: Ingestor, session_factory: sessionmaker[Session], db_session: Session
    ) -> None:
        _ingest_ratings(ingestor, [5, 4, 3])
        earlier = datetime.now(timezone.utc) - timedelta(minutes=5)
        with session_factory() as session:
            session.execute(sa.update(Review).values(created_at=earlier, ingested_at=earlier))
            session.commit()

        ingestor.ingest("42", [WorkerReviewFactory.build(id="1", rating=1)])

        listing = queries.list_reviews(db_session, "42")
        refreshed = queries.list_reviews(db_session, "42", sort="ingested_at", order="desc")
        assert [r.review_id for r in listing["items"]] == ["1", "2", "3"]
        assert listing["items"][0].rating == 1
        assert refreshed["items"][0].review_id == "1"

    def test_other_targets_are_not_listed(self, ingestor: Ingestor, db_session: Session) -> None:
        _ingest_ratings(ingestor, [5, 5], target_id="43")

        assert queries.list_reviews(db_session, "42")["total"] == 0


class TestPurge:
    def test_purge_only_touches_one_target(self, ingestor: Ingestor, db_session: Session) -> None:
        _ingest_ratings(ingestor, [5, 4])
        _ingest_ratings(ingestor, [3], target_id="43")

        removed = purge_reviews(db_session, "42")
        db_session.commit()

        assert removed == 2
        assert ingestor.stored_count("42") == 0
        assert ingestor.stored_count("43") == 1


class TestTargetStatus:
    def test_unknown_target(self, db_session: Session) -> None:
        status = queries.target_status(db_session, "42")

        assert status["stored_reviews"] == 0
        assert status["is_parsing"] is False
        assert status["is_complete"] is False
        assert status["latest_task"] is None

    def test_active_task_is_reported_as_parsing(
        self, task_store: TaskStore, db_session: Session
    ) -> None:
        task = task_store.claim("42", _URL, target_metadata={"name": "Кофейня"}).task

        status = queries.target_status(db_session, "42")

        assert status["is_parsing"] is True
        assert status["active_task"].id == task.id
        assert status["target_metadata"] == {"name": "Кофейня"}

    def test_completed_task_marks_target_complete(
        self, task_store: TaskStore, ingestor: Ingestor, db_session: Session
    ) -> None:
        task = task_store.claim("42", _URL).task
        task_store.transition(task.id, TaskStatus.RUNNING)
        _ingest_ratings(ingestor, [5, 4, 3])
        task_store.transition(task.id, TaskStatus.COMPLETED, parsed_total=3)

        status = queries.target_status(db_session, "42")

        assert status["is_complete"] is True
        assert status["is_parsing"] is False
        assert status["stored_reviews"] == 3
        assert status["last_completed_task"].id == task.id

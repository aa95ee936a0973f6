"""Tests for the HTTP routes.

The FastAPI app is exercised through ``TestClient`` with ``get_db`` and
``get_controller`` overridden to use the per-test SQLite database and a
controller whose probe and dispatch are stubbed.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.api.dependencies import get_controller
from review_harvester.api.main import create_app
from review_harvester.core.database import get_db
from review_harvester.core.task_status import TaskStatus
from review_harvester.harvester.controller import SupersessionController
from review_harvester.harvester.ingestor import Ingestor
from review_harvester.harvester.probe import ProbeResult
from review_harvester.harvester.task_store import TaskStore
from tests.factories import WorkerReviewFactory

_URL = "https://yandex.ru/maps/org/kofeynya/42/"


class _NoopLauncher:
    def terminate_worker(self, pid, host) -> bool:
        return False


@pytest.fixture
def client(session_factory: sessionmaker[Session], task_store: TaskStore) -> Generator[TestClient, None, None]:
    app = create_app()

    def _get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def _get_controller() -> SupersessionController:
        return SupersessionController(
            task_store,
            _NoopLauncher(),
            probe=lambda url: ProbeResult(name="Кофейня", rating=4.5, review_count=75),
            dispatch=lambda task_id: "celery-test",
            revoke=lambda celery_task_id: None,
        )

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_controller] = _get_controller
    with TestClient(app) as test_client:
        yield test_client


class TestScrapes:
    def test_request_scrape_returns_pending_task(self, client: TestClient) -> None:
        response = client.post("/scrapes", json={"url": _URL})

        assert response.status_code == 202
        body = response.json()
        assert body["target_id"] == "42"
        assert body["status"] == "pending"
        assert body["expected_total"] == 75
        assert body["total_batches"] == 2
        assert body["target_metadata"]["name"] == "Кофейня"

    def test_repeat_request_returns_same_task(self, client: TestClient) -> None:
        first = client.post("/scrapes", json={"url": _URL}).json()
        second = client.post("/scrapes", json={"url": _URL}).json()

        assert second["id"] == first["id"]

    def test_forced_request_replaces_task(self, client: TestClient) -> None:
        first = client.post("/scrapes", json={"url": _URL}).json()
        second = client.post("/scrapes", json={"url": _URL, "force": True}).json()

        assert second["id"] != first["id"]
        assert second["retry_count"] == 1
        assert client.get(f"/tasks/{first['id']}").json()["status"] == "failed"

    def test_invalid_url_is_unprocessable(self, client: TestClient) -> None:
        response = client.post("/scrapes", json={"url": "https://example.com/"})

        assert response.status_code == 422

    def test_retarget(self, client: TestClient) -> None:
        old = client.post("/scrapes", json={"url": _URL}).json()

        response = client.post(
            "/scrapes/retarget",
            json={"old_url": _URL, "new_url": "https://yandex.ru/maps/org/pekarnya/43/"},
        )

        assert response.status_code == 202
        assert response.json()["target_id"] == "43"
        assert client.get(f"/tasks/{old['id']}").json()["status"] == "cancelled"


class TestTasks:
    def test_get_unknown_task(self, client: TestClient) -> None:
        assert client.get(f"/tasks/{uuid.uuid4()}").status_code == 404

    def test_cancel(self, client: TestClient) -> None:
        task = client.post("/scrapes", json={"url": _URL}).json()

        response = client.post(f"/tasks/{task['id']}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_cancel_unknown_task(self, client: TestClient) -> None:
        assert client.post(f"/tasks/{uuid.uuid4()}/cancel").status_code == 404


class TestTargets:
    def test_target_status_while_parsing(self, client: TestClient) -> None:
        task = client.post("/scrapes", json={"url": _URL}).json()

        body = client.get("/targets/42").json()

        assert body["is_parsing"] is True
        assert body["is_complete"] is False
        assert body["active_task"]["id"] == task["id"]
        assert body["target_metadata"]["review_count"] == 75

    def test_reviews_and_statistics(
        self, client: TestClient, ingestor: Ingestor, task_store: TaskStore
    ) -> None:
        task = task_store.claim("42", _URL).task
        task_store.transition(task.id, TaskStatus.RUNNING)
        ingestor.ingest(
            "42",
            [WorkerReviewFactory.build(id=str(i), rating=(i % 5) + 1) for i in range(1, 13)],
        )
        task_store.transition(task.id, TaskStatus.COMPLETED, parsed_total=12)

        page = client.get("/targets/42/reviews", params={"page": 2, "per_page": 5}).json()
        stats = client.get("/targets/42/statistics").json()
        status = client.get("/targets/42").json()

        assert page["total"] == 12
        assert page["pages"] == 3
        assert len(page["items"]) == 5
        assert stats["total"] == 12
        assert stats["by_rating"] == {"1": 2, "2": 3, "3": 3, "4": 2, "5": 2}
        assert status["is_complete"] is True
        assert status["stored_reviews"] == 12

    def test_rating_filter(self, client: TestClient, ingestor: Ingestor) -> None:
        ingestor.ingest("42", [WorkerReviewFactory.build(id=str(i), rating=i) for i in range(1, 6)])

        body = client.get("/targets/42/reviews", params={"rating": 5}).json()

        assert [item["rating"] for item in body["items"]] == [5]

    @pytest.mark.parametrize("params", [{"page": 0}, {"per_page": 500}, {"rating": 9}])
    def test_invalid_paging_is_unprocessable(self, client: TestClient, params: dict) -> None:
        assert client.get("/targets/42/reviews", params=params).status_code == 422


class TestSystemEndpoints:
    def test_health_and_request_id(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-7"})

        assert response.json() == {"status": "ok"}
        assert response.headers["X-Request-ID"] == "req-7"

    def test_metrics(self, client: TestClient) -> None:
        client.post("/scrapes", json={"url": _URL})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

"""Tests for the Celery task wrappers.

Tasks are called directly (no broker); the database-facing collaborators
are pointed at the per-test SQLite database with ``unittest.mock.patch``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from review_harvester.config.settings import get_settings
from review_harvester.core.task_status import TaskStatus
from review_harvester.harvester.config import (
    REASON_OPERATOR_CANCEL,
    REASON_SUPERVISOR_LOST,
    SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS,
)
from review_harvester.harvester.controller import SupersessionController, dispatch_supervisor
from review_harvester.harvester.task_store import TaskStore
from review_harvester.harvester.tasks import (
    _fail_task,
    cancel_scrape_task,
    reap_stale_tasks,
    refresh_known_targets,
    request_scrape_task,
    retarget_task,
    supervise_scrape_task,
    supervisor_time_limits,
)

_TASKS = "review_harvester.harvester.tasks"
_URL_42 = "https://yandex.ru/maps/org/kofeynya/42/"
_URL_43 = "https://yandex.ru/maps/org/pekarnya/43/"


def _controller(task_store: TaskStore) -> SupersessionController:
    return SupersessionController(
        task_store,
        MagicMock(),
        probe=lambda url: None,
        dispatch=lambda task_id: f"celery-{task_id}",
        revoke=lambda celery_task_id: None,
    )


class TestSuperviseScrapeTask:
    def test_returns_final_status(self) -> None:
        supervisor = MagicMock()
        supervisor.run.return_value = TaskStatus.COMPLETED
        task_id = str(uuid.uuid4())

        with patch(f"{_TASKS}._build_supervisor", return_value=supervisor):
            result = supervise_scrape_task(task_id)

        assert result == {"task_id": task_id, "status": "completed"}
        supervisor.run.assert_called_once_with(task_id)

    def test_crash_marks_task_failed_and_reraises(self) -> None:
        supervisor = MagicMock()
        supervisor.run.side_effect = RuntimeError("boom")
        task_id = str(uuid.uuid4())

        with (
            patch(f"{_TASKS}._build_supervisor", return_value=supervisor),
            patch(f"{_TASKS}._fail_task") as fail_task,
        ):
            with pytest.raises(RuntimeError):
                supervise_scrape_task(task_id)

        fail_task.assert_called_once_with(task_id, "Supervisor crashed: boom")


class TestFailTask:
    def test_active_task_is_failed(self, task_store: TaskStore) -> None:
        task = task_store.claim("42", "https://yandex.ru/maps/org/x/42/").task
        task_store.transition(task.id, TaskStatus.RUNNING)

        with patch(f"{_TASKS}.TaskStore", return_value=task_store):
            _fail_task(str(task.id), "Supervisor crashed: boom")

        failed = task_store.require(task.id)
        assert failed.status == "failed"
        assert failed.last_error == "Supervisor crashed: boom"

    def test_terminal_task_is_left_alone(self, task_store: TaskStore) -> None:
        task = task_store.claim("42", "https://yandex.ru/maps/org/x/42/").task
        task_store.transition(task.id, TaskStatus.CANCELLED)

        with patch(f"{_TASKS}.TaskStore", return_value=task_store):
            _fail_task(str(task.id), "Supervisor crashed: boom")

        assert task_store.get_status(task.id) is TaskStatus.CANCELLED


class TestReapStaleTasks:
    def test_old_running_task_is_failed_and_worker_stopped(self, task_store: TaskStore) -> None:
        stale = task_store.claim("42", "https://yandex.ru/maps/org/x/42/").task
        task_store.transition(
            stale.id,
            TaskStatus.RUNNING,
            started_at=datetime.now(timezone.utc) - timedelta(hours=3),
        )
        task_store.set_worker(stale.id, 8181, "worker-1")
        fresh = task_store.claim("43", "https://yandex.ru/maps/org/x/43/").task
        task_store.transition(fresh.id, TaskStatus.RUNNING, started_at=datetime.now(timezone.utc))
        launcher = MagicMock()

        with (
            patch(f"{_TASKS}.TaskStore", return_value=task_store),
            patch(f"{_TASKS}.WorkerLauncher", return_value=launcher),
        ):
            result = reap_stale_tasks()

        assert result == {"tasks_failed": 1}
        reaped = task_store.require(stale.id)
        assert reaped.status == "failed"
        assert reaped.status_reason == REASON_SUPERVISOR_LOST
        assert reaped.worker_pid is None
        assert reaped.worker_host is None
        assert task_store.get_status(fresh.id) is TaskStatus.RUNNING
        launcher.terminate_worker.assert_called_once_with(8181, "worker-1")

    def test_nothing_stale(self, task_store: TaskStore) -> None:
        with patch(f"{_TASKS}.TaskStore", return_value=task_store):
            assert reap_stale_tasks() == {"tasks_failed": 0}


class TestRefreshKnownTargets:
    def test_requests_every_known_target_once(self, task_store: TaskStore) -> None:
        done = task_store.claim("42", "https://yandex.ru/maps/org/x/42/").task
        task_store.transition(done.id, TaskStatus.RUNNING)
        task_store.transition(done.id, TaskStatus.COMPLETED)
        task_store.claim("43", "https://yandex.ru/maps/org/x/43/")
        moved = task_store.claim("44", "https://yandex.ru/maps/org/x/44/").task
        task_store.transition(moved.id, TaskStatus.CANCELLED)

        with patch(f"{_TASKS}._build_controller", return_value=_controller(task_store)):
            result = refresh_known_targets()

        assert result == {"queued": 1, "already_active": 1, "errors": 0}
        assert task_store.get_active("42") is not None
        assert task_store.get_active("44") is None

    def test_database_error_is_reported_not_raised(self) -> None:
        controller = MagicMock()
        controller.tasks.known_targets.side_effect = RuntimeError("db down")

        with patch(f"{_TASKS}._build_controller", return_value=controller):
            result = refresh_known_targets()

        assert result["error"] == "db down"
        assert result["queued"] == 0


class TestSupervisorTimeLimits:
    @pytest.fixture(autouse=True)
    def _fresh_settings(self):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    def test_limits_follow_the_runtime_budget(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_RUNTIME_SECONDS", "7200")
        monkeypatch.setenv("EXIT_GRACE_SECONDS", "2")
        monkeypatch.setenv("TERMINATE_GRACE_SECONDS", "3")

        soft, hard = supervisor_time_limits()

        assert soft == 7200 + 2 + 2 * 3 + SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS
        assert hard == soft + SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS

    def test_dispatch_applies_the_limits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_RUNTIME_SECONDS", "5000")
        task_id = uuid.uuid4()

        with patch(f"{_TASKS}.supervise_scrape_task") as task:
            task.apply_async.return_value.id = "celery-1"
            assert dispatch_supervisor(task_id) == "celery-1"

        soft, hard = supervisor_time_limits()
        options = task.apply_async.call_args.kwargs
        assert options["args"] == [str(task_id)]
        assert options["soft_time_limit"] == soft
        assert options["time_limit"] == hard
        assert soft > 5000


class TestControllerWrappers:
    def test_request_scrape_task(self, task_store: TaskStore) -> None:
        with patch(f"{_TASKS}._build_controller", return_value=_controller(task_store)):
            result = request_scrape_task(_URL_42)

        assert result["target_id"] == "42"
        assert result["status"] == "pending"
        assert task_store.get_active("42").id == uuid.UUID(result["task_id"])

    def test_forced_request_replaces_active_task(self, task_store: TaskStore) -> None:
        first = task_store.claim("42", _URL_42).task

        with patch(f"{_TASKS}._build_controller", return_value=_controller(task_store)):
            result = request_scrape_task(_URL_42, force=True)

        assert result["task_id"] != str(first.id)
        assert task_store.get_status(first.id) is TaskStatus.FAILED

    def test_retarget_task(self, task_store: TaskStore) -> None:
        old = task_store.claim("42", _URL_42).task

        with patch(f"{_TASKS}._build_controller", return_value=_controller(task_store)):
            result = retarget_task(_URL_42, _URL_43)

        assert result["target_id"] == "43"
        assert task_store.get_status(old.id) is TaskStatus.CANCELLED

    def test_cancel_scrape_task(self, task_store: TaskStore) -> None:
        task = task_store.claim("42", _URL_42).task

        with patch(f"{_TASKS}._build_controller", return_value=_controller(task_store)):
            result = cancel_scrape_task(str(task.id))

        assert result == {"task_id": str(task.id), "target_id": "42", "status": "cancelled"}
        assert task_store.require(task.id).status_reason == REASON_OPERATOR_CANCEL

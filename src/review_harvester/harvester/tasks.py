"""Celery tasks for the review harvester.

``supervise_scrape_task``
    Runs :class:`~review_harvester.harvester.supervisor.TaskSupervisor` for one
    task.  Single attempt (``max_retries=0``, early ack): a redelivered
    supervisor would launch a second worker for the same target.
    Its Celery time limits are set per dispatch from
    :func:`supervisor_time_limits`.

``request_scrape_task`` / ``retarget_task`` / ``cancel_scrape_task``
    Queue-side wrappers of the supersession controller, for callers that
    cannot reach the database directly.

``refresh_known_targets``
    Beat-driven; requests a non-forced scrape of every known target.  Targets
    with an active task are left alone.

``reap_stale_tasks``
    Beat-driven; fails active tasks that outlived the runtime budget by more
    than the grace period (their supervisor died) and stops their workers.

Error handling policy: the supervisor job marks its task failed and
re-raises on unexpected errors.  The periodic tasks catch everything at the
outermost level, log at ERROR and return a summary, so a bad run never
triggers a retry storm.

Task naming convention::

    review_harvester.harvester.tasks.<action>
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from review_harvester.core.exceptions import ReviewHarvesterError
from review_harvester.core.task_status import ACTIVE_STATUSES, TaskStatus
from review_harvester.harvester.config import (
    REASON_SUPERVISOR_LOST,
    SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS,
)
from review_harvester.harvester.controller import SupersessionController
from review_harvester.harvester.launcher import WorkerLauncher
from review_harvester.harvester.supervisor import TaskSupervisor
from review_harvester.harvester.task_store import TaskStore
from review_harvester.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)
_stdlib_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_supervisor() -> TaskSupervisor:
    return TaskSupervisor()


def _build_controller() -> SupersessionController:
    return SupersessionController()


def _record_task_metrics(task_name: str, status: str, started: float) -> None:
    try:
        from review_harvester.api.metrics import (  # noqa: PLC0415
            celery_task_duration_seconds,
            celery_tasks_total,
        )

        celery_tasks_total.labels(task_name=task_name, status=status).inc()
        celery_task_duration_seconds.labels(task_name=task_name).observe(
            time.perf_counter() - started
        )
    except Exception as exc:  # noqa: BLE001
        _stdlib_logger.debug("%s: metrics recording failed: %s", task_name, exc)


def _fail_task(task_id: str, error: str) -> None:
    """Best-effort: move an active task to failed after a supervisor crash."""
    store = TaskStore()
    try:
        status = store.get_status(task_id)
        if status in ACTIVE_STATUSES:
            store.transition(
                task_id,
                TaskStatus.FAILED,
                expected=status,
                last_error=error,
                worker_pid=None,
                worker_host=None,
            )
    except Exception as exc:  # noqa: BLE001
        _stdlib_logger.warning("harvester: failed to mark task %s failed: %s", task_id, exc)


def supervisor_time_limits() -> tuple[float, float]:
    """Return the ``(soft, hard)`` Celery time limits of a supervisor job.

    Derived from the runtime budget so Celery never interrupts a supervisor
    before its own deadline handling has finalised the task.
    """
    from review_harvester.config.settings import get_settings  # noqa: PLC0415

    settings = get_settings()
    soft = (
        settings.max_runtime_seconds
        + settings.exit_grace_seconds
        + 2 * settings.terminate_grace_seconds
        + SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS
    )
    return soft, soft + SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS


def _task_summary(task: Any) -> dict[str, Any]:
    return {
        "task_id": str(task.id),
        "target_id": task.target_id,
        "status": task.status,
    }


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------


@celery_app.task(
    name="review_harvester.harvester.tasks.supervise_scrape_task",
    bind=True,
    acks_late=False,
    max_retries=0,
)
def supervise_scrape_task(self: Any, task_id: str) -> dict[str, Any]:
    """Supervise one scrape task until it reaches a terminal status.

    Args:
        task_id: UUID string of the ScrapeTask.

    Returns:
        Dict with ``task_id`` and the final ``status``.
    """
    started = time.perf_counter()
    log = logger.bind(task="supervise_scrape_task", task_id=task_id, celery_task_id=self.request.id)
    log.info("supervise_scrape_task: started")
    try:
        final = _build_supervisor().run(task_id)
    except Exception as exc:
        log.error("supervise_scrape_task: failed", error=str(exc), exc_info=True)
        _fail_task(task_id, f"Supervisor crashed: {exc}")
        _record_task_metrics("supervise_scrape_task", "error", started)
        raise

    status = final.value if final is not None else None
    log.info("supervise_scrape_task: finished", status=status)
    _record_task_metrics("supervise_scrape_task", "success", started)
    return {"task_id": task_id, "status": status}


# ---------------------------------------------------------------------------
# Controller wrappers
# ---------------------------------------------------------------------------


@celery_app.task(name="review_harvester.harvester.tasks.request_scrape_task")
def request_scrape_task(url: str, force: bool = False) -> dict[str, Any]:
    """Queue-side :meth:`SupersessionController.request_scrape`."""
    task = _build_controller().request_scrape(url, force=force)
    return _task_summary(task)


@celery_app.task(name="review_harvester.harvester.tasks.retarget_task")
def retarget_task(old_url: str, new_url: str) -> dict[str, Any]:
    """Queue-side :meth:`SupersessionController.retarget`."""
    task = _build_controller().retarget(old_url, new_url)
    return _task_summary(task)


@celery_app.task(name="review_harvester.harvester.tasks.cancel_scrape_task")
def cancel_scrape_task(task_id: str) -> dict[str, Any]:
    """Queue-side :meth:`SupersessionController.cancel`."""
    task = _build_controller().cancel(task_id)
    return _task_summary(task)


# ---------------------------------------------------------------------------
# Periodic tasks
# ---------------------------------------------------------------------------


@celery_app.task(name="review_harvester.harvester.tasks.refresh_known_targets")
def refresh_known_targets() -> dict[str, Any]:
    """Request a non-forced scrape of every known target.

    Returns:
        Dict with ``queued``, ``already_active`` and ``errors`` counts.
    """
    started = time.perf_counter()
    log = logger.bind(task="refresh_known_targets")
    summary = {"queued": 0, "already_active": 0, "errors": 0}

    try:
        controller = _build_controller()
        targets = controller.tasks.known_targets()
    except Exception as exc:
        log.error("refresh_known_targets: DB error listing targets", error=str(exc), exc_info=True)
        _record_task_metrics("refresh_known_targets", "error", started)
        return {"error": str(exc), **summary}

    for target_id, url in targets:
        try:
            before = controller.tasks.get_active(target_id)
            task = controller.request_scrape(url, force=False)
        except ReviewHarvesterError as exc:
            log.warning("refresh_known_targets: skipped target", target_id=target_id, error=str(exc))
            summary["errors"] += 1
            continue
        except Exception as exc:
            log.error(
                "refresh_known_targets: request failed",
                target_id=target_id,
                error=str(exc),
                exc_info=True,
            )
            summary["errors"] += 1
            continue
        if before is not None and before.id == task.id:
            summary["already_active"] += 1
        else:
            summary["queued"] += 1

    log.info("refresh_known_targets: complete", targets=len(targets), **summary)
    _record_task_metrics("refresh_known_targets", "success", started)
    return summary


@celery_app.task(name="review_harvester.harvester.tasks.reap_stale_tasks")
def reap_stale_tasks() -> dict[str, Any]:
    """Fail active tasks whose supervisor is gone.

    A task is stale when it has been active for longer than
    ``max_runtime_seconds + stale_task_grace_seconds``.  Its worker, if any,
    is terminated.

    Returns:
        Dict with the ``tasks_failed`` count.
    """
    from review_harvester.config.settings import get_settings  # noqa: PLC0415

    started = time.perf_counter()
    log = logger.bind(task="reap_stale_tasks")
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(
        seconds=settings.max_runtime_seconds + settings.stale_task_grace_seconds
    )

    store = TaskStore()
    try:
        stale = store.find_stale(cutoff)
    except Exception as exc:
        log.error("reap_stale_tasks: DB error fetching stale tasks", error=str(exc), exc_info=True)
        _record_task_metrics("reap_stale_tasks", "error", started)
        return {"error": str(exc), "tasks_failed": 0}

    if not stale:
        _record_task_metrics("reap_stale_tasks", "success", started)
        return {"tasks_failed": 0}

    launcher = WorkerLauncher()
    failed = 0
    for task in stale:
        try:
            moved = store.transition(
                task.id,
                TaskStatus.FAILED,
                expected=TaskStatus(task.status),
                status_reason=REASON_SUPERVISOR_LOST,
                last_error="Task exceeded its runtime budget without a live supervisor",
                worker_pid=None,
                worker_host=None,
            )
        except Exception as exc:
            log.error("reap_stale_tasks: could not fail task", task_id=str(task.id), error=str(exc))
            continue
        if moved:
            failed += 1
            launcher.terminate_worker(task.worker_pid, task.worker_host)
            log.warning("reap_stale_tasks: task failed", task_id=str(task.id), target_id=task.target_id)

    summary = {"tasks_failed": failed}
    log.info("reap_stale_tasks: complete", **summary)
    _record_task_metrics("reap_stale_tasks", "success", started)
    return summary

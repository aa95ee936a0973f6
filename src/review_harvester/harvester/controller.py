"""Task creation and supersession.

The controller is the only place that creates scrape tasks or takes them away
from their supervisors:

- :meth:`SupersessionController.request_scrape` starts a task for a target,
  or returns the one already active.  With ``force`` the active task is
  failed, the target's stored reviews are purged and a fresh task is queued.
- :meth:`SupersessionController.retarget` cancels the active work of one
  target and starts work on another, keeping the old target's reviews.
- :meth:`SupersessionController.cancel` cancels a single task.

Displaced tasks are stopped from both ends: their status changes first (the
supervisor sees it on its next poll, stops its worker and exits without
writing), then not-yet-started supervisor jobs are revoked and the worker is
signalled directly when it runs on this host.
"""

from __future__ import annotations

import math
import uuid
from typing import Callable, Optional

import structlog

from review_harvester.core.models.scraping import ScrapeTask
from review_harvester.core.task_status import TERMINAL_STATUSES, TaskStatus
from review_harvester.harvester.config import (
    DISPATCH_COUNTDOWN_SECONDS,
    RECORDS_PER_BATCH,
    REASON_OPERATOR_CANCEL,
    REASON_RETARGETED,
    SCRAPING_QUEUE,
)
from review_harvester.harvester.launcher import WorkerLauncher
from review_harvester.harvester.probe import ProbeResult, probe_target
from review_harvester.harvester.targets import extract_target_id
from review_harvester.harvester.task_store import TaskStore, as_task_id

logger = structlog.get_logger(__name__)

_CANCEL_ATTEMPTS = 3


def dispatch_supervisor(task_id: uuid.UUID) -> str:
    """Queue the supervisor job for *task_id*; return the Celery task id."""
    from review_harvester.harvester.tasks import (  # noqa: PLC0415
        supervise_scrape_task,
        supervisor_time_limits,
    )

    soft_limit, hard_limit = supervisor_time_limits()
    result = supervise_scrape_task.apply_async(
        args=[str(task_id)],
        countdown=DISPATCH_COUNTDOWN_SECONDS,
        queue=SCRAPING_QUEUE,
        soft_time_limit=soft_limit,
        time_limit=hard_limit,
    )
    return result.id


def revoke_supervisor(celery_task_id: str) -> None:
    """Revoke a queued supervisor job so it never starts."""
    from review_harvester.workers.celery_app import celery_app  # noqa: PLC0415

    celery_app.control.revoke(celery_task_id)


class SupersessionController:
    """Create, supersede and cancel scrape tasks.

    Args:
        task_store: Task persistence.
        launcher: Used to signal workers of displaced tasks.
        probe: ``url -> ProbeResult | None``; :func:`probe_target` by default.
        dispatch: ``task_id -> celery task id``; queues the supervisor job.
        revoke: ``celery task id -> None``; revokes a queued supervisor job.
    """

    def __init__(
        self,
        task_store: TaskStore | None = None,
        launcher: WorkerLauncher | None = None,
        *,
        probe: Callable[[str], Optional[ProbeResult]] = probe_target,
        dispatch: Callable[[uuid.UUID], str] = dispatch_supervisor,
        revoke: Callable[[str], None] = revoke_supervisor,
    ) -> None:
        self.tasks = task_store or TaskStore()
        self.launcher = launcher or WorkerLauncher()
        self._probe = probe
        self._dispatch = dispatch
        self._revoke = revoke

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def request_scrape(self, url: str, force: bool = False) -> ScrapeTask:
        """Start scraping *url*, or return the target's active task.

        Raises:
            InvalidTargetError: No target id can be derived from *url*.
        """
        target_id = extract_target_id(url)
        log = logger.bind(target_id=target_id, force=force)

        if not force:
            existing = self.tasks.get_active(target_id)
            if existing is not None:
                log.info("controller.reuse_active_task", task_id=str(existing.id), status=existing.status)
                return existing

        probed = self._run_probe(url, log)
        expected = (probed.review_count or 0) if probed else 0
        claim = self.tasks.claim(
            target_id,
            url,
            force=force,
            target_metadata=probed.as_metadata() if probed else None,
            expected_total=expected,
            total_batches=math.ceil(expected / RECORDS_PER_BATCH),
        )
        if not claim.created:
            log.info("controller.reuse_active_task", task_id=str(claim.task.id), status=claim.task.status)
            return claim.task

        if claim.displaced:
            log.info(
                "controller.forced_rerun",
                displaced=[str(t.id) for t in claim.displaced],
                purged=claim.purged,
            )
            self._release(claim.displaced)

        self._queue(claim.task, log)
        return self.tasks.get(claim.task.id) or claim.task

    def retarget(self, old_url: str, new_url: str) -> ScrapeTask:
        """Move active work from the target of *old_url* to that of *new_url*.

        The old target's stored reviews are kept.

        Raises:
            InvalidTargetError: Either URL names no target.
        """
        old_target = extract_target_id(old_url)
        new_target = extract_target_id(new_url)
        if old_target == new_target:
            return self.request_scrape(new_url)

        displaced = self.tasks.supersede(
            old_target,
            TaskStatus.CANCELLED,
            REASON_RETARGETED.format(target_id=new_target),
        )
        logger.info(
            "controller.retarget",
            old_target_id=old_target,
            new_target_id=new_target,
            cancelled=[str(t.id) for t in displaced],
        )
        self._release(displaced)
        return self.request_scrape(new_url)

    def cancel(self, task_id: uuid.UUID | str, reason: str = REASON_OPERATOR_CANCEL) -> ScrapeTask:
        """Cancel *task_id* if it is still active and return its current row.

        Raises:
            TaskNotFoundError: No such task.
        """
        task_id = as_task_id(task_id)
        for _ in range(_CANCEL_ATTEMPTS):
            task = self.tasks.require(task_id)
            if TaskStatus(task.status) in TERMINAL_STATUSES:
                return task
            if self.tasks.transition(
                task_id,
                TaskStatus.CANCELLED,
                expected=TaskStatus(task.status),
                status_reason=reason,
            ):
                logger.info("controller.cancelled", task_id=str(task_id), previous=task.status)
                self._release([task])
                break
        return self.tasks.require(task_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_probe(self, url: str, log) -> Optional[ProbeResult]:
        try:
            probed = self._probe(url)
        except Exception as exc:  # noqa: BLE001
            log.warning("controller.probe_failed", error=str(exc))
            return None
        if probed is not None:
            log.info("controller.probed", name=probed.name, review_count=probed.review_count)
        return probed

    def _queue(self, task: ScrapeTask, log) -> None:
        try:
            celery_task_id = self._dispatch(task.id)
        except Exception as exc:
            log.error("controller.dispatch_failed", task_id=str(task.id), error=str(exc))
            self.tasks.transition(
                task.id,
                TaskStatus.FAILED,
                expected=TaskStatus.PENDING,
                last_error=f"Could not queue supervisor: {exc}",
            )
            raise
        if celery_task_id:
            self.tasks.set_celery_task_id(task.id, celery_task_id)
        log.info("controller.task_queued", task_id=str(task.id), celery_task_id=celery_task_id)

    def _release(self, displaced: list[ScrapeTask]) -> None:
        """Stop the workers and queued supervisor jobs of displaced tasks."""
        for task in displaced:
            self.launcher.terminate_worker(task.worker_pid, task.worker_host)
            if task.status == TaskStatus.PENDING.value and task.celery_task_id:
                try:
                    self._revoke(task.celery_task_id)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "controller.revoke_failed",
                        task_id=str(task.id),
                        celery_task_id=task.celery_task_id,
                        error=str(exc),
                    )

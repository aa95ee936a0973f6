"""Drive one scrape task from pickup to a terminal status.

:meth:`TaskSupervisor.run` is the body of the ``supervise_scrape_task``
Celery job.  It claims the task (``pending -> running``), launches the
worker, and then polls:

1. re-read its own status; anything other than running/paused means the
   task was taken away (cancel, forced re-run, reaper) and the supervisor
   stops the worker and returns without writing;
2. scan the drop directory, apply the meta snapshot and ingest new batches
   behind a status fence;
3. stop when the worker reports completion, the worker exits, or the
   wall-clock budget runs out.

Every exit path after a successful pickup ends with one more drain pass, a
worker termination and a ``running -> completed`` compare-and-set, so the
task never stays active after its supervisor returns and an external
cancellation is never overwritten.  A task paused after the worker was
stopped has nothing left to resume it and is failed instead.

``sleep`` and ``clock`` are injectable; tests drive the loop with a scripted
fake worker and no real waiting.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.api.metrics import (
    reviews_ingested_total,
    scrape_tasks_total,
    worker_launches_total,
)
from review_harvester.core.exceptions import TaskNotFoundError, TaskPreemptedError, WorkerLaunchError
from review_harvester.core.logging_config import task_id_var
from review_harvester.core.task_status import TaskStatus
from review_harvester.harvester.ingestor import Ingestor
from review_harvester.harvester.launcher import WorkerHandle, WorkerLauncher
from review_harvester.harvester.scanner import BatchScanner
from review_harvester.harvester.task_store import TaskStore, as_task_id

logger = structlog.get_logger(__name__)

# Reasons the poll loop ends.
EXIT_META_COMPLETE = "worker_reported_complete"
EXIT_WORKER_EXITED = "worker_exited"
EXIT_DEADLINE = "deadline"


@dataclass
class _RunState:
    """Mutable state of one supervision run."""

    task_id: uuid.UUID
    target_id: str
    handle: WorkerHandle
    scanner: BatchScanner
    seen: dict[str, int] = field(default_factory=dict)
    expected_total: int = 0
    total_batches: int = 0
    target_metadata: Optional[dict[str, Any]] = None
    meta_complete: bool = False
    preempted: bool = False


class TaskSupervisor:
    """Supervise scrape tasks.

    Args:
        task_store: Task persistence; built on *session_factory* when omitted.
        ingestor: Record merger; built on *session_factory* when omitted.
        launcher: Worker control; configured from settings when omitted.
        session_factory: Sessionmaker for the default store and ingestor.
        poll_interval: Seconds between scans.
        max_runtime: Wall-clock budget of one run in seconds.
        exit_grace: Wait after worker exit before the final pass.
        sleep: ``time.sleep`` replacement.
        clock: Monotonic clock replacement.
    """

    def __init__(
        self,
        task_store: TaskStore | None = None,
        ingestor: Ingestor | None = None,
        launcher: WorkerLauncher | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
        poll_interval: float | None = None,
        max_runtime: float | None = None,
        exit_grace: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_interval is None or max_runtime is None or exit_grace is None:
            from review_harvester.config.settings import get_settings  # noqa: PLC0415

            settings = get_settings()
            poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
            max_runtime = settings.max_runtime_seconds if max_runtime is None else max_runtime
            exit_grace = settings.exit_grace_seconds if exit_grace is None else exit_grace

        self.tasks = task_store or TaskStore(session_factory)
        self.ingestor = ingestor or Ingestor(session_factory)
        self.launcher = launcher or WorkerLauncher()
        self.poll_interval = float(poll_interval)
        self.max_runtime = float(max_runtime)
        self.exit_grace = float(exit_grace)
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, task_id: uuid.UUID | str) -> Optional[TaskStatus]:
        """Supervise *task_id* to completion and return its final status.

        Raises:
            TaskNotFoundError: No such task.
        """
        task_id = as_task_id(task_id)
        token = task_id_var.set(str(task_id))
        log = logger.bind(task_id=str(task_id))
        try:
            task = self.tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(str(task_id))

            picked_up = self.tasks.transition(
                task_id,
                TaskStatus.RUNNING,
                expected=TaskStatus.PENDING,
                started_at=datetime.now(timezone.utc),
                phase="starting",
            )
            if not picked_up:
                status = self.tasks.get_status(task_id)
                log.info("supervisor.pickup_skipped", status=status.value if status else None)
                return status

            work_dir = self.launcher.drop_dir_for(task.target_id)
            try:
                handle = self.launcher.launch(task.source_url, work_dir)
            except WorkerLaunchError as exc:
                worker_launches_total.labels(outcome="failed").inc()
                log.error("supervisor.launch_failed", error=str(exc), command=exc.command)
                self.tasks.transition(
                    task_id,
                    TaskStatus.FAILED,
                    expected=TaskStatus.RUNNING,
                    last_error=f"Worker launch failed: {exc}",
                    phase="launch_failed",
                )
                scrape_tasks_total.labels(status=TaskStatus.FAILED.value).inc()
                return self.tasks.get_status(task_id)

            # Every exit from here on stops the worker.
            try:
                worker_launches_total.labels(outcome="started").inc()
                self.tasks.set_worker(task_id, handle.pid, handle.host)
                log.info(
                    "supervisor.worker_started",
                    pid=handle.pid,
                    host=handle.host,
                    target_id=task.target_id,
                )
                state = _RunState(
                    task_id=task_id,
                    target_id=task.target_id,
                    handle=handle,
                    scanner=BatchScanner(work_dir, self.launcher.prefix),
                    expected_total=task.expected_total or 0,
                    total_batches=task.total_batches or 0,
                    target_metadata=task.target_metadata,
                )
                final = self._supervise(state, log)
            except BaseException:
                self.launcher.terminate(handle)
                raise
            scrape_tasks_total.labels(status=final.value if final else "unknown").inc()
            return final
        finally:
            task_id_var.reset(token)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def _supervise(self, state: _RunState, log: Any) -> Optional[TaskStatus]:
        deadline = self._clock() + self.max_runtime

        while True:
            self._sleep(self.poll_interval)

            status = self.tasks.get_status(state.task_id)
            if status not in (TaskStatus.RUNNING, TaskStatus.PAUSED):
                return self._stop_preempted(state, status, log)

            if status is TaskStatus.PAUSED:
                if self._clock() >= deadline:
                    return self._expire_paused(state, log)
                continue

            self._poll_safely(state, log)
            if state.preempted:
                continue

            if state.meta_complete:
                reason = EXIT_META_COMPLETE
                break
            if not self.launcher.is_alive(state.handle):
                self._sleep(self.exit_grace)
                reason = EXIT_WORKER_EXITED
                break
            if self._clock() >= deadline:
                log.warning("supervisor.deadline_reached", max_runtime=self.max_runtime)
                self.launcher.terminate(state.handle)
                reason = EXIT_DEADLINE
                break

        # Final drain: artifacts written between the last scan and the exit.
        self._poll_safely(state, log)
        self.launcher.terminate(state.handle)
        if state.preempted:
            status = self.tasks.get_status(state.task_id)
            return self._stop_preempted(state, status, log)
        return self._finalize(state, reason, log)

    def _poll_safely(self, state: _RunState, log: Any) -> None:
        state.preempted = False
        try:
            self.poll_once(state)
        except TaskPreemptedError:
            log.info("supervisor.ingest_fenced")
            state.preempted = True
        except Exception as exc:  # noqa: BLE001
            log.warning("supervisor.poll_failed", error=str(exc), exc_info=True)

    def poll_once(self, state: _RunState) -> int:
        """Scan once, ingest new batches, and record progress.

        Returns the number of newly created records.
        """
        result = state.scanner.scan(state.seen)

        meta = result.meta
        phase: Optional[str] = None
        if meta is not None:
            if meta.expected_total is not None:
                state.expected_total = max(state.expected_total, meta.expected_total)
            if meta.total_batches is not None:
                state.total_batches = max(state.total_batches, meta.total_batches)
            if meta.target_metadata:
                state.target_metadata = meta.target_metadata
            if meta.is_complete:
                state.meta_complete = True
            phase = meta.phase

        created = 0
        for batch in result.batches:
            created += self.ingestor.ingest(
                state.target_id, batch.records, fence_task_id=state.task_id
            )
            state.seen[batch.name] = batch.marker

        if created:
            reviews_ingested_total.inc(created)

        if meta is None and not result.batches:
            return 0
        self.tasks.record_progress(
            state.task_id,
            parsed_total=self.ingestor.stored_count(state.target_id) if created else None,
            current_batch=len(state.seen) if result.batches else None,
            expected_total=state.expected_total if meta is not None else None,
            total_batches=state.total_batches or None,
            target_metadata=meta.target_metadata if meta is not None else None,
            phase=phase,
        )
        if result.batches:
            logger.debug(
                "supervisor.batches_ingested",
                batches=len(result.batches),
                created=created,
                seen=len(state.seen),
            )
        return created

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def _stop_preempted(
        self,
        state: _RunState,
        status: Optional[TaskStatus],
        log: Any,
    ) -> Optional[TaskStatus]:
        self.launcher.terminate(state.handle)
        log.info("supervisor.preempted", status=status.value if status else None)
        return status

    def _expire_paused(self, state: _RunState, log: Any) -> Optional[TaskStatus]:
        self.launcher.terminate(state.handle)
        log.warning("supervisor.deadline_while_paused", max_runtime=self.max_runtime)
        self.tasks.transition(
            state.task_id,
            TaskStatus.FAILED,
            expected=TaskStatus.PAUSED,
            last_error="Runtime budget exhausted while paused",
            worker_pid=None,
            worker_host=None,
        )
        return self.tasks.get_status(state.task_id)

    def _finalize(self, state: _RunState, reason: str, log: Any) -> Optional[TaskStatus]:
        stored = self.ingestor.stored_count(state.target_id)
        fields: dict[str, Any] = {
            "parsed_total": stored,
            "current_batch": len(state.seen),
            "total_batches": max(state.total_batches, len(state.seen)),
            "expected_total": state.expected_total,
            "target_metadata": state.target_metadata,
            "phase": "done" if reason != EXIT_DEADLINE else "deadline",
            "worker_pid": None,
            "worker_host": None,
            "last_error": None,
        }
        if reason == EXIT_WORKER_EXITED and stored == 0 and state.expected_total > 0:
            fields["anomaly"] = True
            fields["last_error"] = (
                f"Worker exited without producing records; expected {state.expected_total}"
            )
            log.warning(
                "supervisor.empty_result",
                expected_total=state.expected_total,
                log_path=str(state.handle.log_path),
            )

        finished = self.tasks.transition(
            state.task_id,
            TaskStatus.COMPLETED,
            expected=TaskStatus.RUNNING,
            **fields,
        )
        if not finished:
            status = self.tasks.get_status(state.task_id)
            if status is TaskStatus.PAUSED:
                return self._fail_paused_after_stop(state, fields, log)
            log.info("supervisor.finalize_lost", status=status.value if status else None)
            return status

        log.info(
            "supervisor.completed",
            reason=reason,
            parsed_total=stored,
            expected_total=state.expected_total,
            batches=len(state.seen),
        )
        return TaskStatus.COMPLETED

    def _fail_paused_after_stop(
        self,
        state: _RunState,
        fields: dict[str, Any],
        log: Any,
    ) -> Optional[TaskStatus]:
        """Fail a task that was paused after its worker had already been stopped.

        Nothing would ever resume it: the worker is gone and this supervisor
        is returning.  Ingested progress is kept on the failed row.
        """
        fields = {
            **fields,
            "anomaly": False,
            "phase": "stopped_while_paused",
            "last_error": "Task was paused after its worker had stopped",
        }
        log.warning("supervisor.paused_after_stop")
        if self.tasks.transition(
            state.task_id, TaskStatus.FAILED, expected=TaskStatus.PAUSED, **fields
        ):
            return TaskStatus.FAILED
        return self.tasks.get_status(state.task_id)

"""Application-wide exception hierarchy for Review Harvester.

All custom exceptions subclass ``ReviewHarvesterError``, enabling
consistent error handling and structured logging across the application.

Hierarchy::

    ReviewHarvesterError
    ├── InvalidTargetError          (reference: str)
    ├── TaskNotFoundError           (task_id: str)
    ├── InvalidTransitionError      (current, target)
    ├── TaskPreemptedError          (task_id: str)
    └── WorkerError
        └── WorkerLaunchError       (command: list[str])
"""

from __future__ import annotations


class ReviewHarvesterError(Exception):
    """Base class for all Review Harvester exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Target and task exceptions
# ---------------------------------------------------------------------------


class InvalidTargetError(ReviewHarvesterError):
    """Raised when no target identifier can be derived from an input reference.

    Args:
        reference: The URL or identifier that was rejected.
    """

    def __init__(self, reference: str) -> None:
        super().__init__(f"Cannot derive a target id from {reference!r}")
        self.reference = reference


class TaskNotFoundError(ReviewHarvesterError):
    """Raised when a scrape task id does not exist in the task store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Scrape task {task_id} not found")
        self.task_id = task_id


class InvalidTransitionError(ReviewHarvesterError):
    """Raised when a status change is not allowed by the task state machine.

    Args:
        current: Status the task is in.
        target: Status the caller attempted to move it to.
    """

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal task transition {current} -> {target}")
        self.current = current
        self.target = target


class TaskPreemptedError(ReviewHarvesterError):
    """Raised when a fenced write finds its task no longer running.

    The supervisor that receives this must stop ingesting: a cancellation or
    a forced re-run has taken the target away from it.
    """

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Scrape task {task_id} is no longer running")
        self.task_id = task_id


# ---------------------------------------------------------------------------
# Worker exceptions
# ---------------------------------------------------------------------------


class WorkerError(ReviewHarvesterError):
    """Base class for failures of the external scraping worker."""


class WorkerLaunchError(WorkerError):
    """Raised when the worker process cannot be started.

    Args:
        message: Human-readable description of the failure.
        command: The argv that was attempted.
    """

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []

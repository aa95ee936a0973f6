"""Scrape task lifecycle.

::

    pending ──► running ──► completed
       │          │  ▲
       │          ▼  │
       │        paused
       │          │
       └────┬─────┴──► failed | cancelled

``pending``, ``running`` and ``paused`` are *active*: a target holds at most
one task in those states.  ``completed``, ``failed`` and ``cancelled`` are
terminal and never change again.
"""

from __future__ import annotations

from enum import Enum

from review_harvester.core.exceptions import InvalidTransitionError


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.PENDING,
    TaskStatus.RUNNING,
    TaskStatus.PAUSED,
})

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.PAUSED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.PAUSED: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def is_active(status: str | TaskStatus) -> bool:
    return TaskStatus(status) in ACTIVE_STATUSES


def can_transition(current: str | TaskStatus, target: str | TaskStatus) -> bool:
    """Return True when *current* may move to *target*."""
    return TaskStatus(target) in _TRANSITIONS[TaskStatus(current)]


def ensure_transition(current: str | TaskStatus, target: str | TaskStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless the move is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(TaskStatus(current).value, TaskStatus(target).value)


def sources_for(target: str | TaskStatus) -> frozenset[TaskStatus]:
    """Return every status from which *target* is reachable in one step."""
    target = TaskStatus(target)
    return frozenset(src for src, dests in _TRANSITIONS.items() if target in dests)

"""Task lifecycle.

pending -> running -> completed | failed

Terminal states are final. Every task passes through ``running``, even one
that fails before the sandbox is reached, so ``started_at`` is always set.
"""

from __future__ import annotations

from task_runner.errors import IllegalTransition
from task_runner.models import TaskStatus

_ALLOWED: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.pending: frozenset({TaskStatus.running}),
    TaskStatus.running: frozenset({TaskStatus.completed, TaskStatus.failed}),
    TaskStatus.completed: frozenset(),
    TaskStatus.failed: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED[current]


def check_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(task_id, current.value, target.value)

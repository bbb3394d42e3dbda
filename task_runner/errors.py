from __future__ import annotations


class TaskRunnerError(Exception):
    """Base class for errors raised by the task runner."""


class TaskValidationError(TaskRunnerError):
    """A task request is malformed; reported to the caller and never stored."""


class DuplicateTaskError(TaskValidationError):
    """A task with the same id already exists."""


class NotFoundError(TaskRunnerError, KeyError):
    """Unknown task or question id."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key

    def __str__(self) -> str:
        return str(self.args[0])


class InfrastructureError(TaskRunnerError):
    """The sandbox could not be started or reached."""


class IllegalTransition(TaskRunnerError):
    """A task status change that the lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"task {task_id}: illegal transition {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target

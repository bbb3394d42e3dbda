from __future__ import annotations

import asyncio
from typing import Any

from task_runner.errors import DuplicateTaskError, NotFoundError
from task_runner.models import Task
from task_runner.task_store import BaseTaskStore, apply_update


class MemoryTaskStore(BaseTaskStore):
    """In-memory task store.

    Records are immutable pydantic models replaced on every update, so a
    reader holding an old record never sees a half-applied patch.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def create(self, task: Task) -> str:
        async with self._lock:
            if task.id in self._tasks:
                raise DuplicateTaskError(f"task id already exists: {task.id}")
            self._tasks[task.id] = task
        return task.id

    async def all(self) -> list[Task]:
        return list(self._tasks.values())

    async def get(self, task_id: str) -> Task:
        record = self._tasks.get(task_id)
        if record is None:
            raise NotFoundError("task", task_id)
        return record

    async def update(self, task_id: str, **updates: Any) -> Task:
        async with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError("task", task_id)
            record = apply_update(record, updates)
            self._tasks[task_id] = record
            return record

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
from redis.exceptions import WatchError

from task_runner.errors import DuplicateTaskError, IllegalTransition, NotFoundError
from task_runner.models import Task, TaskResult, TaskStatus
from task_runner.redis_client import get_redis
from task_runner.settings import Settings, get_settings
from task_runner.state import check_transition


def apply_update(record: Task, updates: dict[str, Any]) -> Task:
    """Return ``record`` with ``updates`` applied, enforcing the lifecycle."""
    if record.status.terminal:
        target = updates.get("status", record.status)
        raise IllegalTransition(record.id, record.status.value, TaskStatus(target).value)
    if "status" in updates:
        check_transition(record.id, record.status, TaskStatus(updates["status"]))
    return record.model_copy(update=updates)


class BaseTaskStore:
    """Lifecycle helpers shared by the store implementations."""

    async def create(self, task: Task) -> str:
        raise NotImplementedError

    async def get(self, task_id: str) -> Task:
        raise NotImplementedError

    async def all(self) -> list[Task]:
        raise NotImplementedError

    async def update(self, task_id: str, **updates: Any) -> Task:
        raise NotImplementedError

    async def mark_running(self, task_id: str) -> Task:
        return await self.update(
            task_id, status=TaskStatus.running, started_at=self._now()
        )

    async def mark_completed(self, task_id: str, result: TaskResult) -> Task:
        return await self.update(
            task_id,
            status=TaskStatus.completed,
            finished_at=self._now(),
            result=result,
        )

    async def mark_failed(self, task_id: str, result: TaskResult) -> Task:
        return await self.update(
            task_id,
            status=TaskStatus.failed,
            finished_at=self._now(),
            result=result,
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


class RedisTaskStore(BaseTaskStore):
    """Redis-backed task store.

    Updates run inside a WATCH/MULTI transaction on the task key, so two
    writers racing on the same task never interleave. Terminal records get
    the optional TTL; live records never expire.
    """

    def __init__(self, client: redis.Redis | None = None, ttl_sec: int = 0) -> None:
        self.redis = client or get_redis()
        self.key_prefix = "task:"
        self.ttl_sec = ttl_sec

    def _key(self, task_id: str) -> str:
        return f"{self.key_prefix}{task_id}"

    async def create(self, task: Task) -> str:
        created = await self.redis.set(
            self._key(task.id), task.model_dump_json(), nx=True
        )
        if not created:
            raise DuplicateTaskError(f"task id already exists: {task.id}")
        return task.id

    async def get(self, task_id: str) -> Task:
        raw = await self.redis.get(self._key(task_id))
        if raw is None:
            raise NotFoundError("task", task_id)
        return Task.model_validate_json(raw)

    async def all(self) -> list[Task]:
        keys = [key async for key in self.redis.scan_iter(match=f"{self.key_prefix}*")]
        if not keys:
            return []
        values = await self.redis.mget(keys)
        return [Task.model_validate_json(raw) for raw in values if raw is not None]

    async def update(self, task_id: str, **updates: Any) -> Task:
        key = self._key(task_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise NotFoundError("task", task_id)
                    record = apply_update(Task.model_validate_json(raw), updates)
                    expire = self.ttl_sec if record.status.terminal and self.ttl_sec > 0 else None
                    pipe.multi()
                    pipe.set(key, record.model_dump_json(), ex=expire)
                    await pipe.execute()
                    return record
                except WatchError:
                    continue


def build_task_store(settings: Settings | None = None) -> BaseTaskStore:
    settings = settings or get_settings()
    if settings.task_store == "redis":
        return RedisTaskStore(ttl_sec=settings.task_ttl_sec)
    if settings.task_store == "memory":
        from task_runner.storage import MemoryTaskStore

        return MemoryTaskStore()
    raise ValueError(f"unknown TASK_STORE: {settings.task_store}")

from __future__ import annotations

import asyncio
from collections import defaultdict

import redis.asyncio as redis

from task_runner.redis_client import get_redis
from task_runner.settings import Settings, get_settings


class LogStore:
    """Redis-backed per-task progress log."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or get_redis()
        self._list_key = "tasklog:list:"
        self._complete_key = "tasklog:complete:"

    def _list(self, task_id: str) -> str:
        return f"{self._list_key}{task_id}"

    def _complete(self, task_id: str) -> str:
        return f"{self._complete_key}{task_id}"

    async def register(self, task_id: str) -> None:
        await self.redis.delete(self._list(task_id), self._complete(task_id))

    async def append(self, task_id: str, text: str) -> None:
        await self.redis.rpush(self._list(task_id), text)  # type: ignore[misc]

    async def mark_complete(self, task_id: str) -> None:
        await self.redis.set(self._complete(task_id), "1")

    async def is_complete(self, task_id: str) -> bool:
        return bool(await self.redis.exists(self._complete(task_id)))

    async def tail(self, task_id: str) -> list[str]:
        raw = await self.redis.lrange(self._list(task_id), 0, -1)  # type: ignore[misc]
        return [self._decode(item) for item in raw]

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return str(value)


class MemoryLogStore:
    """Process-local progress log with the same interface as ``LogStore``."""

    def __init__(self) -> None:
        self._lines: dict[str, list[str]] = defaultdict(list)
        self._complete: set[str] = set()
        self._lock = asyncio.Lock()

    async def register(self, task_id: str) -> None:
        async with self._lock:
            self._lines.pop(task_id, None)
            self._complete.discard(task_id)

    async def append(self, task_id: str, text: str) -> None:
        async with self._lock:
            self._lines[task_id].append(text)

    async def mark_complete(self, task_id: str) -> None:
        async with self._lock:
            self._complete.add(task_id)

    async def is_complete(self, task_id: str) -> bool:
        return task_id in self._complete

    async def tail(self, task_id: str) -> list[str]:
        return list(self._lines.get(task_id, ()))


def build_log_store(settings: Settings | None = None) -> LogStore | MemoryLogStore:
    settings = settings or get_settings()
    if settings.task_store == "redis":
        return LogStore()
    return MemoryLogStore()

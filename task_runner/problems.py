from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

import httpx
from pydantic import ValidationError

from task_runner import config
from task_runner.errors import InfrastructureError, NotFoundError
from task_runner.models import ProblemDescriptor
from task_runner.settings import Settings, get_settings


class ProblemSource(Protocol):
    async def get(self, question_id: str) -> ProblemDescriptor: ...


class MemoryProblemSource:
    def __init__(self, problems: dict[str, ProblemDescriptor] | None = None) -> None:
        self.problems = dict(problems or {})

    def add(self, problem: ProblemDescriptor) -> None:
        self.problems[problem.id] = problem

    async def get(self, question_id: str) -> ProblemDescriptor:
        problem = self.problems.get(str(question_id))
        if problem is None:
            raise NotFoundError("question", question_id)
        return problem


class FileProblemSource:
    """Reads ``<root>/<question id>.json``."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or config.problem_dir()

    async def get(self, question_id: str) -> ProblemDescriptor:
        path = self.root / f"{Path(str(question_id)).name}.json"
        if not path.is_file():
            raise NotFoundError("question", question_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        data.setdefault("id", str(question_id))
        return ProblemDescriptor.model_validate(data)


class HttpProblemSource:
    """Fetches descriptors from the question service (``GET /question/{id}``)."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def get(self, question_id: str) -> ProblemDescriptor:
        url = f"{self.base_url}/question/{question_id}"
        try:
            if self.client is not None:
                resp = await self.client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise InfrastructureError(f"question service unreachable: {exc}") from exc

        if resp.status_code == 404:
            raise NotFoundError("question", question_id)
        if resp.status_code >= 400:
            raise InfrastructureError(
                f"question service returned {resp.status_code} for {question_id}"
            )
        try:
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            data.setdefault("id", str(question_id))
            return ProblemDescriptor.model_validate(data)
        except (ValueError, ValidationError) as exc:
            raise InfrastructureError(f"malformed question {question_id}: {exc}") from exc


def build_problem_source(settings: Settings | None = None) -> ProblemSource:
    settings = settings or get_settings()
    if settings.question_api_url:
        return HttpProblemSource(settings.question_api_url)
    return FileProblemSource(config.problem_dir(settings))

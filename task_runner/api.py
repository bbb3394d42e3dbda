from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Annotated, Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import Field

from task_runner.dispatcher import Dispatcher
from task_runner.errors import NotFoundError, TaskValidationError
from task_runner.log_store import build_log_store
from task_runner.logging import setup_logging
from task_runner.models import CamelModel, Task, TaskResult, TaskStatus
from task_runner.problems import build_problem_source
from task_runner.sandbox import build_sandbox_runner
from task_runner.settings import get_settings
from task_runner.task_store import build_task_store

API_DESCRIPTION = """
Code Task Runner - queue code for execution against a question's test cases.

## Flow

1. `POST /task` with `{code, language, questionId, action}`; `action` is
   `run` (one visible example, or the `stdin`/`output` you send) or `submit`
   (every test case of the question, stopping at the first failure).
2. Poll `GET /task/{taskId}` until `status` is `completed` or `failed`.

A `completed` task ran your code; whether it passed is in `result`
(`accepted`, per-case `verdicts`, `errorKind`). `failed` means the task
could not be executed at all.
"""


class TaskCreated(CamelModel):
    task_id: str


class RunView(CamelModel):
    status: TaskStatus
    output: str | None = None


class TaskView(CamelModel):
    task_id: str
    status: TaskStatus
    result: TaskResult | None = None
    run: RunView

    @classmethod
    def from_task(cls, task: Task) -> TaskView:
        output = task.result.output if task.result else None
        return cls(
            task_id=task.id,
            status=task.status,
            result=task.result,
            run=RunView(status=task.status, output=output),
        )


class TaskLogs(CamelModel):
    task_id: str
    lines: list[str] = Field(default_factory=list)
    complete: bool = False


def default_dispatcher() -> Dispatcher:
    settings = get_settings()
    return Dispatcher(
        store=build_task_store(settings),
        sandbox=build_sandbox_runner(settings),
        problems=build_problem_source(settings),
        log_store=build_log_store(settings),
        settings=settings,
    )


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def create_app(build_dispatcher: Callable[[], Dispatcher] = default_dispatcher) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        dispatcher = build_dispatcher()
        await dispatcher.start()
        app.state.dispatcher = dispatcher
        try:
            yield
        finally:
            await dispatcher.stop()

    app = FastAPI(
        title="Code Task Runner",
        version="0.1.0",
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post(
        "/task",
        response_model=TaskCreated,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def create_task(
        request: Request,
        dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
    ) -> TaskCreated:
        try:
            payload: Any = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(
                status_code=400, detail=f"body is not valid JSON: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="body must be a JSON object")

        try:
            task_id = await dispatcher.submit_task(payload)
        except TaskValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return TaskCreated(task_id=task_id)

    @app.get("/task/{task_id}", response_model=TaskView)
    async def get_task(
        task_id: str,
        dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
    ) -> TaskView:
        try:
            task = await dispatcher.get_task(task_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="task not found") from exc
        return TaskView.from_task(task)

    @app.get("/task/{task_id}/logs", response_model=TaskLogs)
    async def get_task_logs(
        task_id: str,
        dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
    ) -> TaskLogs:
        try:
            lines = await dispatcher.get_logs(task_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="task not found") from exc
        complete = await dispatcher.logs_complete(task_id)
        return TaskLogs(task_id=task_id, lines=lines, complete=complete)

    return app


app = create_app()

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from pydantic import ValidationError

from task_runner.errors import (
    DuplicateTaskError,
    InfrastructureError,
    NotFoundError,
    TaskValidationError,
)
from task_runner.judge import (
    build_verdict,
    infrastructure_result,
    run_result,
    submit_result,
)
from task_runner.log_store import LogStore, MemoryLogStore
from task_runner.logging import get_logger
from task_runner.models import (
    Limits,
    SandboxRequest,
    SandboxResult,
    Task,
    TaskAction,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TestCase,
    Verdict,
)
from task_runner.problems import ProblemSource
from task_runner.sandbox import SandboxRunner
from task_runner.settings import Settings, get_settings
from task_runner.task_store import BaseTaskStore

log = get_logger(__name__)

T = TypeVar("T")

REQUIRED_FIELDS = (
    ("code", "code"),
    ("language", "language"),
    ("question_id", "questionId"),
    ("action", "action"),
)


class _TaskFailed(Exception):
    """Carries the result of a task that ends in ``failed``."""

    def __init__(self, result: TaskResult) -> None:
        super().__init__(result.error)
        self.result = result


class Lane:
    """A FIFO queue drained by a fixed number of workers."""

    def __init__(self, name: str, size: int) -> None:
        self.name = name
        self.size = size
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self.workers: list[asyncio.Task] = []


class Dispatcher:
    """Accepts tasks, runs them on bounded worker pools and records results.

    ``run`` and ``submit`` tasks are served by separate lanes unless
    ``shared_pool`` is set, so a burst of submissions cannot hold back
    interactive runs. Within a lane tasks start in submission order.
    """

    def __init__(
        self,
        store: BaseTaskStore,
        sandbox: SandboxRunner,
        problems: ProblemSource,
        log_store: LogStore | MemoryLogStore | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.sandbox = sandbox
        self.problems = problems
        self.log_store = log_store or MemoryLogStore()
        self.infra_retries = max(0, settings.infra_retries)
        self.retry_backoff_sec = settings.retry_backoff_sec
        self._sleep = sleep

        run_lane = Lane("run", max(1, settings.run_workers))
        if settings.shared_pool or settings.submit_workers <= 0:
            run_lane.name = "shared"
            submit_lane = run_lane
        else:
            submit_lane = Lane("submit", settings.submit_workers)
        self._lanes = {TaskAction.run: run_lane, TaskAction.submit: submit_lane}
        self._queued: set[str] = set()
        self._started = False

    @property
    def lanes(self) -> list[Lane]:
        unique: list[Lane] = []
        for lane in self._lanes.values():
            if lane not in unique:
                unique.append(lane)
        return unique

    # ---- client-facing operations ----

    async def submit_task(self, request: TaskRequest | dict[str, Any]) -> str:
        """Validate and enqueue a task; returns its id without waiting for it."""
        task = self._build_task(request)
        try:
            await self.store.create(task)
        except DuplicateTaskError:
            existing = await self.store.get(task.id)
            if existing.same_request(task):
                return existing.id
            raise

        await self.log_store.register(task.id)
        await self.log_store.append(task.id, f"[dispatcher] queued {task.action.value} task")
        self._enqueue(task)
        log.info(
            "task.queued",
            task_id=task.id,
            action=task.action.value,
            question_id=task.question_id,
            language=task.language,
        )
        return task.id

    async def get_task(self, task_id: str) -> Task:
        return await self.store.get(task_id)

    async def get_logs(self, task_id: str) -> list[str]:
        await self.store.get(task_id)
        return await self.log_store.tail(task_id)

    async def logs_complete(self, task_id: str) -> bool:
        """True once the task has reached a terminal state and logged it."""
        return await self.log_store.is_complete(task_id)

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.recover()
        for lane in self.lanes:
            for n in range(lane.size):
                lane.workers.append(
                    asyncio.create_task(self._worker(lane, n), name=f"{lane.name}-{n}")
                )
        log.info(
            "dispatcher.started",
            lanes={lane.name: lane.size for lane in self.lanes},
        )

    async def stop(self, drain: bool = False) -> None:
        if drain:
            await self.wait_idle()
        workers = [w for lane in self.lanes for w in lane.workers]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for lane in self.lanes:
            lane.workers.clear()
        self._started = False
        log.info("dispatcher.stopped")

    async def wait_idle(self) -> None:
        """Wait until every queued task has been processed."""
        await asyncio.gather(*(lane.queue.join() for lane in self.lanes))

    async def recover(self) -> None:
        """Requeue pending tasks left in the store and fail orphaned running ones."""
        tasks = sorted(await self.store.all(), key=lambda t: t.created_at)
        for task in tasks:
            if task.status is TaskStatus.pending:
                self._enqueue(task)
                log.info("task.recovered", task_id=task.id)
            elif task.status is TaskStatus.running:
                await self.store.mark_failed(
                    task.id, infrastructure_result("task interrupted by restart")
                )
                await self.log_store.mark_complete(task.id)
                log.warning("task.orphaned", task_id=task.id)

    # ---- execution ----

    async def process(self, task_id: str) -> Task:
        """Run one task from ``pending`` to a terminal state."""
        task = await self.store.get(task_id)
        if task.status is not TaskStatus.pending:
            log.warning("task.skipped", task_id=task_id, status=task.status.value)
            return task

        task = await self.store.mark_running(task_id)
        await self.log_store.append(task_id, "[dispatcher] running")
        bound = log.bind(task_id=task_id, action=task.action.value)
        bound.info("task.running")

        try:
            if task.action is TaskAction.run:
                result = await self._run(task)
            else:
                result = await self._submit(task)
            task = await self.store.mark_completed(task_id, result)
        except _TaskFailed as failure:
            bound.warning("task.failed", error=failure.result.error)
            await self.log_store.append(task_id, f"[dispatcher] failed: {failure.result.error}")
            task = await self.store.mark_failed(task_id, failure.result)
        except Exception as exc:
            bound.exception("task.crashed")
            await self.log_store.append(task_id, f"[dispatcher] internal error: {exc}")
            task = await self.store.mark_failed(
                task_id, infrastructure_result(f"internal error: {exc}")
            )
        else:
            bound.info(
                "task.completed",
                accepted=result.accepted,
                error_kind=result.error_kind.value,
                cases=len(result.verdicts),
            )
            summary = "accepted" if result.accepted else result.error_kind.value
            await self.log_store.append(task_id, f"[dispatcher] completed: {summary}")
        finally:
            await self.log_store.mark_complete(task_id)
        return task

    async def _run(self, task: Task) -> TaskResult:
        stdin, expected = task.stdin, task.expected_output
        limits = Limits()
        try:
            problem = await self._retrying(
                task.id, "question", lambda: self.problems.get(task.question_id)
            )
        except (NotFoundError, InfrastructureError) as exc:
            if stdin is None:
                raise _TaskFailed(infrastructure_result(str(exc))) from exc
            log.warning("task.question_unavailable", task_id=task.id, error=str(exc))
        else:
            limits = problem.limits()
            if stdin is None:
                cases = problem.test_cases()
                if not cases:
                    raise _TaskFailed(
                        infrastructure_result(f"question {task.question_id} has no test cases")
                    )
                stdin, expected = cases[0].input, cases[0].expected_output

        case = TestCase(index=0, input=stdin or "", expected_output=expected or "")
        try:
            result = await self._execute(task, case, limits)
        except InfrastructureError as exc:
            raise _TaskFailed(infrastructure_result(str(exc))) from exc
        return run_result(build_verdict(case, result))

    async def _submit(self, task: Task) -> TaskResult:
        try:
            problem = await self._retrying(
                task.id, "question", lambda: self.problems.get(task.question_id)
            )
        except (NotFoundError, InfrastructureError) as exc:
            raise _TaskFailed(infrastructure_result(str(exc))) from exc

        cases = problem.test_cases()
        if not cases:
            raise _TaskFailed(
                infrastructure_result(f"question {task.question_id} has no test cases")
            )
        if problem.is_truncated():
            raise _TaskFailed(
                infrastructure_result(
                    f"question {task.question_id} declares {problem.num_test_cases} "
                    f"test cases but only {len(cases)} were served"
                )
            )
        limits = problem.limits()

        verdicts: list[Verdict] = []
        for n, case in enumerate(cases, start=1):
            try:
                result = await self._execute(task, case, limits)
            except InfrastructureError as exc:
                raise _TaskFailed(infrastructure_result(str(exc), verdicts)) from exc
            verdict = build_verdict(case, result)
            verdicts.append(verdict)
            outcome = "passed" if verdict.passed else verdict.error_kind.value
            await self.log_store.append(
                task.id, f"[dispatcher] case {n}/{len(cases)}: {outcome}"
            )
            if not verdict.passed:
                break
        return submit_result(verdicts, len(cases))

    async def _execute(self, task: Task, case: TestCase, limits: Limits) -> SandboxResult:
        request = SandboxRequest(
            code=task.code,
            language=task.language,
            stdin=case.input,
            timeout_ms=limits.run_timeout_ms,
            compile_timeout_ms=limits.compile_timeout_ms,
            memory_limit_kb=limits.memory_limit_kb,
            compile_memory_limit_kb=limits.compile_memory_limit_kb,
        )
        return await self._retrying(task.id, "sandbox", lambda: self.sandbox.execute(request))

    async def _retrying(
        self, task_id: str, what: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        """Retry ``call`` on ``InfrastructureError`` with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except InfrastructureError as exc:
                if attempt >= self.infra_retries:
                    raise
                delay = self.retry_backoff_sec * (2**attempt)
                attempt += 1
                log.warning(
                    "infrastructure.retry",
                    task_id=task_id,
                    target=what,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self.log_store.append(
                    task_id, f"[dispatcher] {what} unavailable, retry {attempt}/{self.infra_retries}"
                )
                await self._sleep(delay)

    # ---- internals ----

    def _build_task(self, request: TaskRequest | dict[str, Any]) -> Task:
        if not isinstance(request, TaskRequest):
            try:
                request = TaskRequest.model_validate(request)
            except ValidationError as exc:
                raise TaskValidationError(f"invalid task request: {exc}") from exc

        missing = [
            alias
            for name, alias in REQUIRED_FIELDS
            if not (getattr(request, name) or "").strip()
        ]
        if missing:
            raise TaskValidationError(f"missing required fields: {', '.join(missing)}")
        try:
            action = TaskAction(request.action.strip().lower())
        except ValueError as exc:
            raise TaskValidationError(
                f"action must be 'run' or 'submit', got {request.action!r}"
            ) from exc

        return Task(
            id=(request.task_id or "").strip() or uuid4().hex,
            action=action,
            language=request.language.strip(),
            code=request.code,
            question_id=request.question_id.strip(),
            user_id=request.user_id,
            stdin=request.stdin if action is TaskAction.run else None,
            expected_output=request.output if action is TaskAction.run else None,
            created_at=datetime.now(timezone.utc),
        )

    def _enqueue(self, task: Task) -> None:
        if task.id in self._queued:
            return
        self._queued.add(task.id)
        self._lanes[task.action].queue.put_nowait(task.id)

    async def _worker(self, lane: Lane, n: int) -> None:
        while True:
            task_id = await lane.queue.get()
            try:
                await self.process(task_id)
            except Exception:
                log.exception("worker.error", lane=lane.name, worker=n, task_id=task_id)
            finally:
                self._queued.discard(task_id)
                lane.queue.task_done()

import asyncio

import pytest

from task_runner.errors import DuplicateTaskError, NotFoundError, TaskValidationError
from task_runner.models import (
    ErrorKind,
    SandboxResult,
    TaskStatus,
)
from task_runner.problems import MemoryProblemSource
from task_runner.storage import MemoryTaskStore

from conftest import FakeSandbox, make_dispatcher, make_question, run_until_idle


def _run_request(**kwargs):
    values = dict(
        code="print(sum(map(int, open(0).read().split())))",
        language="python",
        questionId="q1",
        action="run",
        stdin="1\n2\n",
        output="3",
    )
    values.update(kwargs)
    return values


def _submit_request(**kwargs):
    values = dict(code="solution", language="python", questionId="q1", action="submit")
    values.update(kwargs)
    return values


class RecordingStore(MemoryTaskStore):
    def __init__(self):
        super().__init__()
        self.history = []

    async def update(self, task_id, **updates):
        record = await super().update(task_id, **updates)
        if "status" in updates:
            self.history.append((task_id, record.status))
        return record


@pytest.mark.parametrize(
    "missing", ["code", "language", "questionId", "action"]
)
def test_submit_task_requires_fields(missing):
    async def scenario():
        store = MemoryTaskStore()
        dispatcher = make_dispatcher(FakeSandbox(), store=store)
        request = _run_request()
        del request[missing]
        with pytest.raises(TaskValidationError) as info:
            await dispatcher.submit_task(request)
        assert missing in str(info.value)
        assert await store.all() == []

    asyncio.run(scenario())


def test_submit_task_rejects_unknown_action_and_blank_fields():
    async def scenario():
        dispatcher = make_dispatcher(FakeSandbox())
        with pytest.raises(TaskValidationError):
            await dispatcher.submit_task(_run_request(action="debug"))
        with pytest.raises(TaskValidationError):
            await dispatcher.submit_task(_run_request(code="   "))

    asyncio.run(scenario())


def test_submit_task_returns_pending_id_without_waiting():
    async def scenario():
        dispatcher = make_dispatcher(FakeSandbox({"1\n2\n": "3\n"}))
        task_id = await dispatcher.submit_task(_run_request(questionId=12))
        task = await dispatcher.get_task(task_id)
        assert task.status is TaskStatus.pending
        assert task.result is None
        assert task.question_id == "12"

    asyncio.run(scenario())


def test_client_supplied_task_id_is_idempotent():
    async def scenario():
        dispatcher = make_dispatcher(FakeSandbox())
        first = await dispatcher.submit_task(_run_request(taskId="abc"))
        again = await dispatcher.submit_task(_run_request(taskId="abc"))
        assert first == again == "abc"
        with pytest.raises(DuplicateTaskError):
            await dispatcher.submit_task(_run_request(taskId="abc", code="other"))

    asyncio.run(scenario())


def test_get_unknown_task():
    async def scenario():
        dispatcher = make_dispatcher(FakeSandbox())
        with pytest.raises(NotFoundError):
            await dispatcher.get_task("nope")
        with pytest.raises(NotFoundError):
            await dispatcher.get_logs("nope")

    asyncio.run(scenario())


def test_run_passes_after_whitespace_normalization():
    sandbox = FakeSandbox({"1\n2\n": "3\n"})
    (task,) = asyncio.run(run_until_idle(make_dispatcher(sandbox), _run_request()))

    assert task.status is TaskStatus.completed
    assert task.started_at is not None and task.finished_at is not None
    (verdict,) = task.result.verdicts
    assert verdict.passed
    assert verdict.error_kind is ErrorKind.none
    assert task.result.accepted
    assert task.result.output == "3\n"
    assert len(sandbox.calls) == 1
    assert sandbox.calls[0].timeout_ms == 5000


def test_run_uses_first_visible_case_when_no_stdin():
    sandbox = FakeSandbox({"1 2\n": "3"})
    request = _run_request()
    del request["stdin"]
    del request["output"]
    (task,) = asyncio.run(run_until_idle(make_dispatcher(sandbox), request))
    assert task.status is TaskStatus.completed
    assert task.result.accepted
    assert sandbox.calls[0].stdin == "1 2\n"


def test_run_with_unknown_question_falls_back_to_default_limits():
    sandbox = FakeSandbox({"1\n2\n": "3"})
    (task,) = asyncio.run(
        run_until_idle(make_dispatcher(sandbox), _run_request(questionId="missing"))
    )
    assert task.status is TaskStatus.completed
    assert sandbox.calls[0].timeout_ms == 5000
    assert sandbox.calls[0].compile_timeout_ms == 10000
    assert sandbox.calls[0].memory_limit_kb is None


def test_timeout_is_a_verdict_not_a_failure():
    async def slow(request):
        assert request.timeout_ms == 1000
        return SandboxResult(stdout="", timed_out=True, exit_code=-9, execution_time_ms=1000)

    problems = MemoryProblemSource({"q1": make_question(run_timeout=1000)})
    dispatcher = make_dispatcher(FakeSandbox(handler=slow), problems=problems)
    (task,) = asyncio.run(run_until_idle(dispatcher, _run_request()))

    assert task.status is TaskStatus.completed
    (verdict,) = task.result.verdicts
    assert verdict.error_kind is ErrorKind.timeout
    assert not verdict.passed
    assert not task.result.accepted


def test_submit_stops_at_first_failure():
    cases = [("a", "1"), ("b", "2"), ("c", "3"), ("d", "4")]
    sandbox = FakeSandbox({"a": "1", "b": "2", "c": "wrong", "d": "4"})
    problems = MemoryProblemSource({"q1": make_question(cases=cases)})
    dispatcher = make_dispatcher(sandbox, problems=problems)
    (task,) = asyncio.run(run_until_idle(dispatcher, _submit_request()))

    assert task.status is TaskStatus.completed
    result = task.result
    assert len(result.verdicts) == 3
    assert [v.passed for v in result.verdicts] == [True, True, False]
    assert not result.accepted
    assert result.failed_index == 2
    assert result.error_kind is ErrorKind.wrong_answer
    assert result.total_cases == 4
    assert result.output == "Wrong Answer"
    assert [c.stdin for c in sandbox.calls] == ["a", "b", "c"]


def test_submit_accepted_runs_every_case_in_order():
    sandbox = FakeSandbox({"1 2\n": "3", "2 2\n": "4", "5 5\n": "10\n"})
    (task,) = asyncio.run(run_until_idle(make_dispatcher(sandbox), _submit_request()))

    assert task.status is TaskStatus.completed
    assert task.result.accepted
    assert task.result.output == "Accepted"
    assert [v.index for v in task.result.verdicts] == [0, 1, 2]
    assert [c.stdin for c in sandbox.calls] == ["1 2\n", "2 2\n", "5 5\n"]


def test_submit_ignores_client_stdin():
    sandbox = FakeSandbox({"1 2\n": "3", "2 2\n": "4", "5 5\n": "10"})
    (task,) = asyncio.run(
        run_until_idle(make_dispatcher(sandbox), _submit_request(stdin="x", output="y"))
    )
    assert task.stdin is None
    assert task.expected_output is None
    assert task.result.accepted


def test_infrastructure_failure_after_retries():
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    sandbox = FakeSandbox(always_fail=True)
    dispatcher = make_dispatcher(sandbox, sleep=fake_sleep, retry_backoff_sec=0.5)
    (task,) = asyncio.run(run_until_idle(dispatcher, _run_request()))

    assert task.status is TaskStatus.failed
    assert task.result.error_kind is ErrorKind.infrastructure
    assert "sandbox unreachable" in task.result.error
    assert len(sandbox.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_transient_infrastructure_fault_is_retried_transparently():
    sandbox = FakeSandbox({"1\n2\n": "3"}, failures=2)
    (task,) = asyncio.run(run_until_idle(make_dispatcher(sandbox), _run_request()))
    assert task.status is TaskStatus.completed
    assert task.result.accepted
    assert len(sandbox.calls) == 3


def test_submit_infrastructure_failure_keeps_partial_verdicts():
    async def handler(request):
        # first case passes, then the sandbox goes away
        sandbox.always_fail = True
        return SandboxResult(stdout="3", exit_code=0)

    sandbox = FakeSandbox(handler=handler)
    dispatcher = make_dispatcher(sandbox, infra_retries=0)
    (task,) = asyncio.run(run_until_idle(dispatcher, _submit_request()))

    assert task.status is TaskStatus.failed
    assert task.result.error_kind is ErrorKind.infrastructure
    assert len(task.result.verdicts) == 1


def test_submit_unknown_question_fails():
    dispatcher = make_dispatcher(FakeSandbox())
    (task,) = asyncio.run(run_until_idle(dispatcher, _submit_request(questionId="nope")))
    assert task.status is TaskStatus.failed
    assert "nope" in task.result.error


def test_submit_question_without_cases_fails():
    problems = MemoryProblemSource({"q1": make_question(cases=[])})
    dispatcher = make_dispatcher(FakeSandbox(), problems=problems)
    (task,) = asyncio.run(run_until_idle(dispatcher, _submit_request()))
    assert task.status is TaskStatus.failed
    assert "no test cases" in task.result.error


def test_submit_refuses_question_with_hidden_cases_missing():
    trimmed = make_question(num_test_cases=5)
    sandbox = FakeSandbox({"1 2\n": "3", "2 2\n": "4", "5 5\n": "10"})
    dispatcher = make_dispatcher(sandbox, problems=MemoryProblemSource({"q1": trimmed}))
    (task,) = asyncio.run(run_until_idle(dispatcher, _submit_request()))
    assert task.status is TaskStatus.failed
    assert task.result.error_kind is ErrorKind.infrastructure
    assert not task.result.accepted
    assert "declares 5 test cases but only 3" in task.result.error
    assert sandbox.calls == []


def test_run_accepts_question_with_only_visible_cases():
    trimmed = make_question(cases=[("1 2\n", "3")], num_test_cases=5)
    sandbox = FakeSandbox({"1 2\n": "3"})
    dispatcher = make_dispatcher(sandbox, problems=MemoryProblemSource({"q1": trimmed}))
    (task,) = asyncio.run(run_until_idle(dispatcher, _run_request(stdin=None, output=None)))
    assert task.status is TaskStatus.completed
    assert task.result.accepted


def test_limits_reach_the_sandbox():
    question = make_question(
        run_timeout=1500,
        compile_timeout=4000,
        run_memory_limit=64 * 1024 * 1024,
        compile_memory_limit=128 * 1024 * 1024,
    )
    sandbox = FakeSandbox({"1 2\n": "3", "2 2\n": "4", "5 5\n": "10"})
    dispatcher = make_dispatcher(sandbox, problems=MemoryProblemSource({"q1": question}))
    asyncio.run(run_until_idle(dispatcher, _submit_request()))
    request = sandbox.calls[0]
    assert request.timeout_ms == 1500
    assert request.compile_timeout_ms == 4000
    assert request.memory_limit_kb == 64 * 1024
    assert request.compile_memory_limit_kb == 128 * 1024


class FlakyCompletionStore(MemoryTaskStore):
    def __init__(self):
        super().__init__()
        self.completion_attempts = 0

    async def mark_completed(self, task_id, result):
        self.completion_attempts += 1
        raise ConnectionError("store went away")


def test_failed_completion_write_still_ends_the_task():
    store = FlakyCompletionStore()
    dispatcher = make_dispatcher(FakeSandbox({"1\n2\n": "3"}), store=store)
    (task,) = asyncio.run(run_until_idle(dispatcher, _run_request()))
    assert store.completion_attempts == 1
    assert task.status is TaskStatus.failed
    assert task.result.error_kind is ErrorKind.infrastructure
    assert "store went away" in task.result.error


def test_unexpected_error_marks_task_failed_and_worker_survives():
    async def handler(request):
        if request.code == "explode":
            raise RuntimeError("unexpected")
        return SandboxResult(stdout="3", exit_code=0)

    dispatcher = make_dispatcher(FakeSandbox(handler=handler), run_workers=1)
    first, second = asyncio.run(
        run_until_idle(dispatcher, _run_request(code="explode"), _run_request())
    )
    assert first.status is TaskStatus.failed
    assert "unexpected" in first.result.error
    assert second.status is TaskStatus.completed


def test_transitions_are_monotonic():
    store = RecordingStore()
    sandbox = FakeSandbox({"1\n2\n": "3", "1 2\n": "3", "2 2\n": "4", "5 5\n": "10"})
    dispatcher = make_dispatcher(sandbox, store=store)
    tasks = asyncio.run(
        run_until_idle(dispatcher, _run_request(), _submit_request(), _run_request())
    )
    for task in tasks:
        statuses = [status for task_id, status in store.history if task_id == task.id]
        assert statuses == [TaskStatus.running, TaskStatus.completed]


def test_terminal_reads_are_identical():
    sandbox = FakeSandbox({"1\n2\n": "3"})

    async def scenario():
        dispatcher = make_dispatcher(sandbox)
        (task,) = await run_until_idle(dispatcher, _run_request())
        reads = [await dispatcher.get_task(task.id) for _ in range(3)]
        return [r.model_dump_json() for r in reads]

    dumps = asyncio.run(scenario())
    assert dumps[0] == dumps[1] == dumps[2]


def test_fifo_order_within_a_lane():
    sandbox = FakeSandbox({"a": "a", "b": "b", "c": "c"})
    dispatcher = make_dispatcher(sandbox, run_workers=1)
    asyncio.run(
        run_until_idle(
            dispatcher,
            _run_request(stdin="a", output="a"),
            _run_request(stdin="b", output="b"),
            _run_request(stdin="c", output="c"),
        )
    )
    assert [c.stdin for c in sandbox.calls] == ["a", "b", "c"]


def test_worker_pool_bounds_concurrency():
    async def handler(request):
        await asyncio.sleep(0.05)
        return SandboxResult(stdout=request.stdin, exit_code=0)

    sandbox = FakeSandbox(handler=handler)
    dispatcher = make_dispatcher(sandbox, run_workers=2)
    requests = [_run_request(stdin=str(n), output=str(n)) for n in range(6)]
    tasks = asyncio.run(run_until_idle(dispatcher, *requests))

    assert all(t.status is TaskStatus.completed for t in tasks)
    assert sandbox.max_active == 2


def test_submit_lane_does_not_block_runs():
    async def scenario():
        release = asyncio.Event()

        async def handler(request):
            if request.code == "slow":
                await release.wait()
            return SandboxResult(stdout="3", exit_code=0)

        dispatcher = make_dispatcher(FakeSandbox(handler=handler), submit_workers=1)
        await dispatcher.start()
        try:
            await dispatcher.submit_task(_submit_request(code="slow"))
            run_id = await dispatcher.submit_task(_run_request())
            for _ in range(200):
                if (await dispatcher.get_task(run_id)).status.terminal:
                    break
                await asyncio.sleep(0.01)
            assert (await dispatcher.get_task(run_id)).status is TaskStatus.completed
            release.set()
            await asyncio.wait_for(dispatcher.wait_idle(), timeout=5)
        finally:
            await dispatcher.stop()

    asyncio.run(scenario())


def test_shared_pool_routes_both_actions_to_one_lane():
    dispatcher = make_dispatcher(FakeSandbox(), shared_pool=True, run_workers=3)
    (lane,) = dispatcher.lanes
    assert lane.name == "shared"
    assert lane.size == 3


def test_recover_requeues_pending_and_fails_orphans():
    async def scenario():
        store = MemoryTaskStore()
        sandbox = FakeSandbox({"1\n2\n": "3"})
        first = make_dispatcher(sandbox, store=store)
        pending_id = await first.submit_task(_run_request())
        orphan_id = await first.submit_task(_run_request(taskId="orphan"))
        await store.mark_running(orphan_id)

        restarted = make_dispatcher(sandbox, store=store)
        await restarted.start()
        try:
            await asyncio.wait_for(restarted.wait_idle(), timeout=5)
        finally:
            await restarted.stop()
        return await store.get(pending_id), await store.get(orphan_id)

    pending, orphan = asyncio.run(scenario())
    assert pending.status is TaskStatus.completed
    assert orphan.status is TaskStatus.failed
    assert orphan.result.error_kind is ErrorKind.infrastructure


def test_progress_log():
    async def scenario():
        sandbox = FakeSandbox({"a": "1", "b": "x"})
        problems = MemoryProblemSource({"q1": make_question(cases=[("a", "1"), ("b", "2")])})
        dispatcher = make_dispatcher(sandbox, problems=problems)
        (task,) = await run_until_idle(dispatcher, _submit_request())
        return await dispatcher.get_logs(task.id), await dispatcher.logs_complete(task.id)

    lines, complete = asyncio.run(scenario())
    assert lines[0] == "[dispatcher] queued submit task"
    assert "[dispatcher] case 1/2: passed" in lines
    assert "[dispatcher] case 2/2: wrong_answer" in lines
    assert lines[-1] == "[dispatcher] completed: wrong_answer"
    assert complete

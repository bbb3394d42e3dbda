import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from task_runner.dispatcher import Dispatcher  # noqa: E402
from task_runner.errors import InfrastructureError  # noqa: E402
from task_runner.log_store import MemoryLogStore  # noqa: E402
from task_runner.models import ProblemDescriptor, SandboxResult  # noqa: E402
from task_runner.problems import MemoryProblemSource  # noqa: E402
from task_runner.settings import Settings  # noqa: E402
from task_runner.storage import MemoryTaskStore  # noqa: E402


class FakeSandbox:
    """Scripted sandbox: answers by stdin, optionally failing first."""

    def __init__(self, outputs=None, handler=None, failures=0, always_fail=False):
        self.outputs = outputs or {}
        self.handler = handler
        self.failures = failures
        self.always_fail = always_fail
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def execute(self, request):
        self.calls.append(request)
        if self.always_fail or self.failures > 0:
            self.failures -= 1
            raise InfrastructureError("sandbox unreachable")
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.handler is not None:
                return await self.handler(request)
            result = self.outputs.get(request.stdin)
            if result is None:
                return SandboxResult(stdout="")
            if isinstance(result, str):
                return SandboxResult(stdout=result, exit_code=0)
            return result
        finally:
            self.active -= 1


def make_settings(**overrides):
    values = dict(
        run_workers=2,
        submit_workers=1,
        shared_pool=False,
        infra_retries=2,
        retry_backoff_sec=0.0,
        task_store="memory",
        use_fake_redis=True,
        task_ttl_sec=0,
        sandbox="local",
        question_api_url=None,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def make_question(qid="q1", cases=None, **extra):
    cases = cases if cases is not None else [("1 2\n", "3"), ("2 2\n", "4"), ("5 5\n", "10")]
    return ProblemDescriptor(
        id=qid,
        example_input={str(i): inp for i, (inp, _) in enumerate(cases, start=1)},
        expected_output={str(i): out for i, (_, out) in enumerate(cases, start=1)},
        visible_test_cases=1,
        **extra,
    )


def make_dispatcher(sandbox, problems=None, store=None, sleep=None, **settings):
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Dispatcher(
        store=store or MemoryTaskStore(),
        sandbox=sandbox,
        problems=problems or MemoryProblemSource({"q1": make_question()}),
        log_store=MemoryLogStore(),
        settings=make_settings(**settings),
        **kwargs,
    )


async def run_until_idle(dispatcher, *requests):
    await dispatcher.start()
    try:
        ids = [await dispatcher.submit_task(r) for r in requests]
        await asyncio.wait_for(dispatcher.wait_idle(), timeout=10)
        return [await dispatcher.get_task(i) for i in ids]
    finally:
        await dispatcher.stop()


@pytest.fixture
def problem_dir(tmp_path, monkeypatch):
    """Point the file problem source at a temporary directory."""
    monkeypatch.setenv("PROBLEM_DATA_DIR", str(tmp_path / "problems"))
    return tmp_path / "problems"

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_RUN_TIMEOUT_MS = 5000
DEFAULT_COMPILE_TIMEOUT_MS = 10000


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskAction(str, Enum):
    run = "run"
    submit = "submit"


class TaskStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.completed, TaskStatus.failed)


class ErrorKind(str, Enum):
    none = "none"
    compile_error = "compile_error"
    runtime_error = "runtime_error"
    timeout = "timeout"
    memory_exceeded = "memory_exceeded"
    wrong_answer = "wrong_answer"
    infrastructure = "infrastructure"


class TaskRequest(CamelModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    code: str | None = None
    language: str | None = None
    question_id: str | None = None
    action: str | None = None
    task_id: str | None = None
    user_id: str | None = None
    stdin: str | None = None
    output: str | None = None


class Verdict(CamelModel):
    index: int
    input: str
    expected_output: str
    actual_output: str = ""
    passed: bool = False
    execution_time_ms: int = 0
    memory_kb: int | None = None
    error_kind: ErrorKind = ErrorKind.none
    stderr: str | None = None


class TaskResult(CamelModel):
    verdicts: list[Verdict] = Field(default_factory=list)
    accepted: bool = False
    failed_index: int | None = None
    error_kind: ErrorKind = ErrorKind.none
    output: str | None = None
    total_cases: int = 0
    error: str | None = None


class Task(CamelModel):
    id: str
    action: TaskAction
    language: str
    code: str
    question_id: str
    user_id: str | None = None
    stdin: str | None = None
    expected_output: str | None = None
    status: TaskStatus = TaskStatus.pending
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: TaskResult | None = None

    def same_request(self, other: Task) -> bool:
        fields = ("action", "language", "code", "question_id", "stdin", "expected_output")
        return all(getattr(self, f) == getattr(other, f) for f in fields)


class TestCase(BaseModel):
    __test__ = False

    index: int
    input: str
    expected_output: str


class Limits(BaseModel):
    run_timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS
    compile_timeout_ms: int = DEFAULT_COMPILE_TIMEOUT_MS
    memory_limit_kb: int | None = None
    compile_memory_limit_kb: int | None = None


class ProblemDescriptor(BaseModel):
    """Question as served by the problem service.

    Test case maps are keyed by 1-based case numbers rendered as strings.
    Timeouts are milliseconds, memory limits bytes; ``-1`` means unlimited.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    example_input: dict[str, str] = Field(default_factory=dict)
    expected_output: dict[str, str] = Field(default_factory=dict)
    visible_test_cases: int | None = None
    run_timeout: int | None = None
    compile_timeout: int | None = None
    run_memory_limit: int | None = None
    compile_memory_limit: int | None = None
    num_test_cases: int | None = None

    def test_cases(self) -> list[TestCase]:
        keys = sorted(self.example_input, key=_case_key)
        return [
            TestCase(
                index=i,
                input=self.example_input[key],
                expected_output=self.expected_output.get(key, ""),
            )
            for i, key in enumerate(keys)
        ]

    def is_truncated(self) -> bool:
        """True when fewer cases were served than the question declares.

        The question service trims cases to ``visible_test_cases`` for
        display; such a descriptor cannot be used to judge a submission.
        """
        if not self.num_test_cases or self.num_test_cases <= 0:
            return False
        return len(self.example_input) < self.num_test_cases

    def limits(self) -> Limits:
        return Limits(
            run_timeout_ms=_positive_or(self.run_timeout, DEFAULT_RUN_TIMEOUT_MS),
            compile_timeout_ms=_positive_or(
                self.compile_timeout, DEFAULT_COMPILE_TIMEOUT_MS
            ),
            memory_limit_kb=_kb_or_none(self.run_memory_limit),
            compile_memory_limit_kb=_kb_or_none(self.compile_memory_limit),
        )


class SandboxRequest(CamelModel):
    code: str
    language: str
    stdin: str = ""
    timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS
    compile_timeout_ms: int = DEFAULT_COMPILE_TIMEOUT_MS
    memory_limit_kb: int | None = None
    compile_memory_limit_kb: int | None = None


class SandboxResult(CamelModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    memory_exceeded: bool = False
    compile_error: str | None = None
    execution_time_ms: int = 0
    memory_kb: int | None = None


def _case_key(key: str) -> tuple[int, str]:
    try:
        return (int(key), key)
    except ValueError:
        return (1 << 30, key)


def _kb_or_none(limit_bytes: int | None) -> int | None:
    if limit_bytes is None or limit_bytes <= 0:
        return None
    return max(1, limit_bytes // 1024)


def _positive_or(value: int | None, default: int) -> int:
    if value is None or value <= 0:
        return default
    return value

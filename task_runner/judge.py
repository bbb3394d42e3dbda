from __future__ import annotations

from task_runner.models import (
    ErrorKind,
    SandboxResult,
    TaskResult,
    TestCase,
    Verdict,
)

ACCEPTED = "Accepted"
# The web client compares against this exact string.
WRONG_ANSWER = "Wrong Answer"

MAX_STDERR_CHARS = 4096


def normalize_output(text: str | None) -> str:
    """Trim and collapse every whitespace run to a single space."""
    if not text:
        return ""
    return " ".join(text.split())


def outputs_match(actual: str | None, expected: str | None) -> bool:
    return normalize_output(actual) == normalize_output(expected)


def error_kind_of(result: SandboxResult) -> ErrorKind:
    if result.compile_error is not None:
        return ErrorKind.compile_error
    if result.timed_out:
        return ErrorKind.timeout
    if result.memory_exceeded:
        return ErrorKind.memory_exceeded
    if result.exit_code not in (0, None):
        return ErrorKind.runtime_error
    return ErrorKind.none


def build_verdict(case: TestCase, result: SandboxResult) -> Verdict:
    kind = error_kind_of(result)
    if kind is ErrorKind.none and not outputs_match(result.stdout, case.expected_output):
        kind = ErrorKind.wrong_answer

    stderr = result.compile_error if result.compile_error is not None else result.stderr
    return Verdict(
        index=case.index,
        input=case.input,
        expected_output=case.expected_output,
        actual_output=result.stdout,
        passed=kind is ErrorKind.none,
        execution_time_ms=result.execution_time_ms,
        memory_kb=result.memory_kb,
        error_kind=kind,
        stderr=stderr[:MAX_STDERR_CHARS] if stderr else None,
    )


def run_result(verdict: Verdict) -> TaskResult:
    output = verdict.actual_output
    if verdict.error_kind is ErrorKind.compile_error:
        output = verdict.stderr or ""
    return TaskResult(
        verdicts=[verdict],
        accepted=verdict.passed,
        failed_index=None if verdict.passed else verdict.index,
        error_kind=verdict.error_kind,
        output=output,
        total_cases=1,
    )


def submit_result(verdicts: list[Verdict], total_cases: int) -> TaskResult:
    """Aggregate the verdicts of a fail-fast submission.

    ``verdicts`` holds every case that ran, so on rejection the last entry is
    the first failure.
    """
    failed = next((v for v in verdicts if not v.passed), None)
    accepted = failed is None and len(verdicts) == total_cases
    return TaskResult(
        verdicts=verdicts,
        accepted=accepted,
        failed_index=failed.index if failed else None,
        error_kind=failed.error_kind if failed else ErrorKind.none,
        output=ACCEPTED if accepted else WRONG_ANSWER,
        total_cases=total_cases,
    )


def infrastructure_result(message: str, verdicts: list[Verdict] | None = None) -> TaskResult:
    return TaskResult(
        verdicts=list(verdicts or []),
        accepted=False,
        error_kind=ErrorKind.infrastructure,
        error=message,
    )

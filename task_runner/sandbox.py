from __future__ import annotations

import asyncio
import os
import resource
import shutil
import signal
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from task_runner.errors import InfrastructureError
from task_runner.logging import get_logger
from task_runner.models import SandboxRequest, SandboxResult
from task_runner.settings import Settings, get_settings

log = get_logger(__name__)

_MEMORY_MARKERS = ("MemoryError", "std::bad_alloc", "JavaScript heap out of memory")


class SandboxRunner(Protocol):
    """Executes one (code, stdin) pair.

    Limit violations and failing programs are reported on the result.
    ``InfrastructureError`` means the execution could not be started at all.
    """

    async def execute(self, request: SandboxRequest) -> SandboxResult: ...


@dataclass(frozen=True)
class LanguageSpec:
    source: str
    run: tuple[str, ...]
    compile: tuple[str, ...] | None = None


def default_languages() -> dict[str, LanguageSpec]:
    python = LanguageSpec(source="main.py", run=(sys.executable, "main.py"))
    node = LanguageSpec(source="main.js", run=("node", "main.js"))
    c = LanguageSpec(
        source="main.c",
        compile=("gcc", "-O2", "-std=c17", "main.c", "-o", "main", "-lm"),
        run=("./main",),
    )
    cpp = LanguageSpec(
        source="main.cpp",
        compile=("g++", "-O2", "-std=c++17", "main.cpp", "-o", "main"),
        run=("./main",),
    )
    return {
        "python": python,
        "py": python,
        "python3": python,
        "js": node,
        "javascript": node,
        "node": node,
        "c": c,
        "cpp": cpp,
        "c++": cpp,
    }


@dataclass
class _Completed:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    elapsed_ms: int


class LocalSandboxRunner:
    """Runs code in local subprocesses with a wall clock and address space limit."""

    def __init__(
        self,
        languages: dict[str, LanguageSpec] | None = None,
        work_root: Path | None = None,
    ) -> None:
        self.languages = languages or default_languages()
        self.work_root = work_root

    async def execute(self, request: SandboxRequest) -> SandboxResult:
        lang = self.languages.get(request.language.strip().lower())
        if lang is None:
            return SandboxResult(
                compile_error=f"unsupported language: {request.language}"
            )

        workdir = Path(tempfile.mkdtemp(prefix="task-", dir=self.work_root))
        try:
            (workdir / lang.source).write_text(request.code, encoding="utf-8")

            if lang.compile is not None:
                built = await self._spawn(
                    lang.compile,
                    workdir,
                    None,
                    request.compile_timeout_ms,
                    request.compile_memory_limit_kb,
                )
                if built.timed_out:
                    return SandboxResult(compile_error="compilation timed out")
                if built.exit_code != 0:
                    message = (built.stderr or built.stdout).strip()
                    return SandboxResult(
                        exit_code=built.exit_code,
                        compile_error=message or f"compiler exited with {built.exit_code}",
                    )

            ran = await self._spawn(
                lang.run,
                workdir,
                request.stdin,
                request.timeout_ms,
                request.memory_limit_kb,
            )
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        return SandboxResult(
            stdout=ran.stdout,
            stderr=ran.stderr,
            exit_code=ran.exit_code,
            timed_out=ran.timed_out,
            memory_exceeded=self._memory_exceeded(ran, request.memory_limit_kb),
            execution_time_ms=ran.elapsed_ms,
        )

    async def _spawn(
        self,
        cmd: tuple[str, ...],
        cwd: Path,
        stdin: str | None,
        timeout_ms: int,
        memory_limit_kb: int | None,
    ) -> _Completed:
        preexec = _rlimit_preexec(memory_limit_kb) if memory_limit_kb else None
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                preexec_fn=preexec,
                start_new_session=True,
            )
        except OSError as exc:
            raise InfrastructureError(f"failed to spawn {cmd[0]}: {exc}") from exc

        data = stdin.encode() if stdin is not None else None
        communicate = asyncio.ensure_future(process.communicate(data))
        timed_out = False
        try:
            out, err = await asyncio.wait_for(
                asyncio.shield(communicate), timeout=timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            timed_out = True
            _kill(process)
            out, err = await communicate
        except asyncio.CancelledError:
            # the program must not outlive a cancelled worker
            _kill(process)
            communicate.cancel()
            await process.wait()
            raise
        elapsed_ms = int((time.monotonic() - started) * 1000)

        return _Completed(
            stdout=out.decode(errors="replace") if out else "",
            stderr=err.decode(errors="replace") if err else "",
            exit_code=process.returncode,
            timed_out=timed_out,
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _memory_exceeded(ran: _Completed, memory_limit_kb: int | None) -> bool:
        if ran.timed_out or ran.exit_code == 0:
            return False
        if any(marker in ran.stderr for marker in _MEMORY_MARKERS):
            return True
        killed = ran.exit_code in (-signal.SIGKILL, -signal.SIGSEGV, -signal.SIGABRT)
        return bool(memory_limit_kb) and killed


def _rlimit_preexec(memory_limit_kb: int):
    limit = memory_limit_kb * 1024

    def _apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return _apply


def _kill(process: asyncio.subprocess.Process) -> None:
    # the child leads its own session, so its descendants die with it
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class PistonSandboxRunner:
    """Client for a Piston-compatible execution service (``POST /api/v2/execute``)."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        request_timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.request_timeout = request_timeout

    def _payload(self, request: SandboxRequest) -> dict:
        return {
            "language": request.language,
            "version": "*",
            "files": [{"content": request.code}],
            "stdin": request.stdin,
            "run_timeout": request.timeout_ms,
            "compile_timeout": request.compile_timeout_ms,
            "run_memory_limit": _bytes_or_unlimited(request.memory_limit_kb),
            "compile_memory_limit": _bytes_or_unlimited(request.compile_memory_limit_kb),
        }

    async def execute(self, request: SandboxRequest) -> SandboxResult:
        url = f"{self.base_url}/api/v2/execute"
        started = time.monotonic()
        try:
            if self.client is not None:
                resp = await self.client.post(
                    url, json=self._payload(request), timeout=self.request_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                    resp = await client.post(url, json=self._payload(request))
        except httpx.HTTPError as exc:
            raise InfrastructureError(f"sandbox unreachable: {exc}") from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if resp.status_code >= 500:
            raise InfrastructureError(f"sandbox returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise InfrastructureError(f"sandbox sent a non-JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise InfrastructureError("sandbox sent an unexpected body")
        if resp.status_code >= 400:
            # Piston rejects unknown languages/versions with a 400 and a message.
            return SandboxResult(
                compile_error=str(body.get("message") or f"rejected ({resp.status_code})")
            )
        return self._to_result(body, request, elapsed_ms)

    @staticmethod
    def _to_result(
        body: dict, request: SandboxRequest, elapsed_ms: int
    ) -> SandboxResult:
        stage = body.get("compile")
        if stage and (stage.get("code") not in (0, None) or stage.get("signal")):
            if stage.get("status") == "TO" or stage.get("signal") == "SIGKILL":
                return SandboxResult(compile_error="compilation timed out")
            message = (stage.get("stderr") or stage.get("output") or "").strip()
            return SandboxResult(
                exit_code=stage.get("code"),
                compile_error=message or "compilation failed",
            )

        run = body.get("run") or {}
        wall_ms = run.get("wall_time")
        exec_ms = int(wall_ms) if isinstance(wall_ms, (int, float)) else elapsed_ms
        killed = run.get("signal") == "SIGKILL"
        timed_out = run.get("status") == "TO" or (
            killed and run.get("status") is None and exec_ms >= request.timeout_ms
        )
        memory = run.get("memory")
        memory_exceeded = not timed_out and (
            any(marker in (run.get("stderr") or "") for marker in _MEMORY_MARKERS)
            or (killed and bool(request.memory_limit_kb))
        )
        return SandboxResult(
            stdout=run.get("stdout") or "",
            stderr=run.get("stderr") or "",
            exit_code=run.get("code"),
            timed_out=timed_out,
            memory_exceeded=memory_exceeded,
            execution_time_ms=exec_ms,
            memory_kb=int(memory) // 1024 if isinstance(memory, (int, float)) else None,
        )


def _bytes_or_unlimited(limit_kb: int | None) -> int:
    return limit_kb * 1024 if limit_kb else -1


def build_sandbox_runner(settings: Settings | None = None) -> SandboxRunner:
    settings = settings or get_settings()
    if settings.sandbox == "piston":
        log.info("sandbox.piston", url=settings.sandbox_url)
        return PistonSandboxRunner(settings.sandbox_url)
    if settings.sandbox == "local":
        return LocalSandboxRunner()
    raise ValueError(f"unknown SANDBOX: {settings.sandbox}")

"""Async runner for the coding-agent CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Mapping, Sequence

from .utils import sanitize_environment


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of a one-shot agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentProcess:
    """A long-lived interactive agent subprocess."""

    def __init__(self, process: asyncio.subprocess.Process, args: Sequence[str]) -> None:
        self._process = process
        self._args = tuple(args)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def args(self) -> tuple[str, ...]:
        return self._args

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    async def send(self, text: str) -> None:
        """Write ``text`` plus a newline to the agent's stdin."""

        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise AgentRunnerError("Agent input stream is closed")
        stdin.write(text.encode("utf-8") + b"\n")
        await stdin.drain()

    async def lines(self) -> AsyncIterator[str]:
        stdout = self._process.stdout
        if stdout is None:
            return
        while True:
            raw = await stdout.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\n")

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self, grace: float = 5.0) -> int:
        if self._process.returncode is not None:
            return self._process.returncode
        self._process.terminate()
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            self._process.kill()
            return await self._process.wait()


class AgentRunner:
    """Launch coding-agent CLI processes asynchronously."""

    def __init__(self, executable: Path | None = None, *, command: str = "claude") -> None:
        self._executable_path = self._resolve_executable(executable, command)

    @staticmethod
    def _resolve_executable(explicit: Path | None, command: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise AgentNotFoundError(f"Agent CLI '{command}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> AgentExecutionResult:
        return await self._invoke("--version")

    async def start(
        self,
        cwd: Path,
        *,
        flags: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AgentProcess:
        """Spawn an interactive session rooted at ``cwd``."""

        cmd = [str(self._executable_path), *(flags or [])]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=sanitize_environment(env),
            )
        except OSError as exc:
            raise AgentRunnerError(f"Failed to start agent in {cwd}: {exc}") from exc
        return AgentProcess(process, cmd)

    async def _invoke(self, *args: str) -> AgentExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return AgentExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeAgentProcess:
    """In-memory stand-in for :class:`AgentProcess`."""

    _next_pid = 40000

    def __init__(self, args: Sequence[str], cwd: Path, env: Mapping[str, str] | None) -> None:
        FakeAgentProcess._next_pid += 1
        self.pid = FakeAgentProcess._next_pid
        self.args = tuple(args)
        self.cwd = Path(cwd)
        self.env = dict(env or {})
        self.inputs: list[str] = []
        self.returncode: int | None = None
        self._output: asyncio.Queue[str | None] = asyncio.Queue()
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.returncode is None

    def emit(self, line: str) -> None:
        self._output.put_nowait(line)

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._output.put_nowait(None)
            self._exited.set()

    async def send(self, text: str) -> None:
        if self.returncode is not None:
            raise AgentRunnerError("Agent input stream is closed")
        self.inputs.append(text)

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._output.get()
            if line is None:
                break
            yield line

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode or 0

    async def terminate(self, grace: float = 5.0) -> int:
        self.exit(-15)
        return await self.wait()


class FakeAgentRunner(AgentRunner):
    """Test double that records spawns instead of launching processes."""

    def __init__(
        self,
        responses: Iterable[AgentExecutionResult] | None = None,
        *,
        ready_line: str | None = "ready",
    ) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/tmp/fake-agent")
        self._ready_line = ready_line
        self.processes: list[FakeAgentProcess] = []

    async def start(
        self,
        cwd: Path,
        *,
        flags: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> FakeAgentProcess:  # type: ignore[override]
        process = FakeAgentProcess([str(self._executable_path), *(flags or [])], cwd, env)
        self.processes.append(process)
        if self._ready_line is not None:
            process.emit(self._ready_line)
        return process

    async def _invoke(self, *args: str) -> AgentExecutionResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            return self._responses.pop(0)
        return AgentExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentProcess",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentProcess",
    "FakeAgentRunner",
]

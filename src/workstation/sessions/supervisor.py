"""Start, feed and reap the agent subprocess behind each session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ..agents.runner import AgentNotFoundError, AgentRunner, AgentRunnerError
from ..agents.utils import session_environment
from ..config import RuntimeConfig
from ..errors import NotFoundError, UnreachableError
from .models import Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

ExitCallback = Callable[[Session, int], None]


@dataclass(slots=True)
class ManagedSession:
    session_id: str
    process: Any
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    pump: asyncio.Task[None] | None = None
    watcher: asyncio.Task[None] | None = None


class SessionSupervisor:
    """Owns the subprocess lifecycle for daemon-spawned sessions.

    Output from each process is read on its own task, so a quiet or chatty
    session never blocks another. When a process exits it is removed from
    the registry and ``on_exit`` is called with the final session snapshot.
    """

    def __init__(
        self,
        runner: AgentRunner | None,
        registry: SessionRegistry,
        *,
        runtime_config: RuntimeConfig,
        socket_path: Path | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self._runner = runner
        self._registry = registry
        self._runtime_config = runtime_config
        self._socket_path = socket_path
        self._on_exit = on_exit
        self._managed: dict[str, ManagedSession] = {}

    def set_exit_callback(self, callback: ExitCallback) -> None:
        self._on_exit = callback

    def is_managed(self, session_id: str) -> bool:
        return session_id in self._managed

    async def spawn(self, session: Session) -> ManagedSession:
        if self._runner is None:
            raise AgentNotFoundError("No agent CLI is configured for this daemon")
        flags = self._runtime_config.agent_flags()
        env = session_environment(
            session.session_id, str(self._socket_path) if self._socket_path else None
        )
        process = await self._runner.start(Path(session.repo_path), flags=flags, env=env)
        managed = ManagedSession(session_id=session.session_id, process=process)
        self._managed[session.session_id] = managed
        managed.pump = asyncio.create_task(self._pump(managed), name=f"pump-{session.session_id}")
        managed.watcher = asyncio.create_task(self._watch(managed), name=f"reap-{session.session_id}")
        logger.info(
            "Agent process started",
            extra={
                "session_id": session.session_id,
                "pid": getattr(process, "pid", None),
                "cwd": session.repo_path,
                "flags": flags,
            },
        )
        return managed

    async def wait_ready(self, session_id: str, timeout: float) -> bool:
        """Wait for the first line of agent output.

        Returns False when the wait runs out or the process exits first.
        """

        managed = self._managed.get(session_id)
        if managed is None:
            return False
        ready = asyncio.ensure_future(managed.ready.wait())
        waiters: set[asyncio.Future[Any]] = {ready}
        if managed.watcher is not None:
            waiters.add(managed.watcher)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
        if managed.ready.is_set():
            return True
        if managed.watcher is not None and managed.watcher in done:
            logger.warning("Agent exited before becoming ready", extra={"session_id": session_id})
        else:
            logger.warning(
                "Agent did not become ready in time",
                extra={"session_id": session_id, "timeout": timeout},
            )
        return False

    async def write(self, session_id: str, text: str) -> None:
        managed = self._managed.get(session_id)
        if managed is None:
            raise NotFoundError(f"Session '{session_id}' has no running process")
        try:
            await managed.process.send(text)
        except (AgentRunnerError, ConnectionError) as exc:
            raise UnreachableError(f"Session '{session_id}' is not accepting input: {exc}") from exc
        self._registry.touch(session_id)

    async def close(self, session_id: str, grace: float = 5.0) -> int:
        managed = self._managed.get(session_id)
        if managed is None:
            raise NotFoundError(f"Session '{session_id}' has no running process")
        returncode = await managed.process.terminate(grace)
        if managed.watcher is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await managed.watcher
        return returncode

    async def shutdown(self, grace: float = 5.0) -> None:
        for session_id in list(self._managed):
            try:
                await self.close(session_id, grace)
            except NotFoundError:
                continue

    async def _pump(self, managed: ManagedSession) -> None:
        async for _line in managed.process.lines():
            managed.ready.set()
            self._registry.touch(managed.session_id)

    async def _watch(self, managed: ManagedSession) -> None:
        returncode = await managed.process.wait()
        if managed.pump is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await managed.pump
        self._managed.pop(managed.session_id, None)
        try:
            session = self._registry.remove(managed.session_id)
        except NotFoundError:
            return
        logger.info(
            "Agent process exited",
            extra={"session_id": managed.session_id, "returncode": returncode},
        )
        if self._on_exit is not None:
            self._on_exit(session, returncode)


__all__ = ["ManagedSession", "SessionSupervisor"]

"""Daemon bootstrap: wires the stores, supervisor, gateway and event bus."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .agents import AgentNotFoundError, AgentRunner, AgentRunnerError
from .bus import EventBus
from .checkpoints import CheckpointStore
from .config import RuntimeConfig, WorkstationSettings, configure_logging, get_settings
from .gateway import DispatchGateway
from .projects import ProjectIndex
from .sessions.registry import SessionRegistry
from .sessions.supervisor import SessionSupervisor

logger = logging.getLogger(__name__)


class Daemon:
    """One long-lived process serving socket clients and agent subprocesses."""

    def __init__(
        self,
        settings: WorkstationSettings,
        *,
        runner: AgentRunner | None,
        agent_metadata: dict[str, Any] | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.agent_metadata = agent_metadata or {
            "available": runner is not None,
            "version": None,
            "error": None,
        }
        self.registry = SessionRegistry()
        self.checkpoints = CheckpointStore(settings.checkpoint_dir)
        self.projects = ProjectIndex(settings.projects_file)
        self.runtime_config = RuntimeConfig(settings.config_file)
        self.supervisor = SessionSupervisor(
            runner,
            self.registry,
            runtime_config=self.runtime_config,
            socket_path=settings.socket_path,
        )
        self.gateway = DispatchGateway(
            settings=settings,
            registry=self.registry,
            supervisor=self.supervisor,
            checkpoints=self.checkpoints,
            projects=self.projects,
            runtime_config=self.runtime_config,
        )
        self.bus = EventBus(
            settings.socket_path,
            descriptor_path=settings.descriptor_path,
            on_command=self.gateway.handle,
            on_event=self.gateway.apply_event,
            health_interval=settings.socket_health_interval,
            subscriber_queue_size=settings.subscriber_queue_size,
        )
        self.gateway.attach_publisher(self.bus.publish)
        self._stopping: asyncio.Event | None = None

    async def start(self) -> None:
        self.settings.home_dir.mkdir(parents=True, exist_ok=True)
        await self.probe_agent()
        recoverable = self.gateway.recoverable()
        logger.info(
            "Checkpoint store ready",
            extra={"recoverable": [row["session_id"] for row in recoverable]},
        )
        await self.bus.start()

    async def probe_agent(self) -> None:
        """Record the agent CLI version; failures leave the daemon usable."""

        if self.runner is None:
            return
        try:
            result = await self.runner.version()
        except (AgentRunnerError, OSError) as exc:
            self.agent_metadata["error"] = str(exc)
        else:
            if result.ok:
                self.agent_metadata["version"] = result.stdout.strip()
            else:
                self.agent_metadata["error"] = (
                    result.stderr.strip() or f"Agent version command failed with exit code {result.returncode}"
                )
        if self.agent_metadata.get("error"):
            logger.warning("Agent CLI version check failed", extra=self.agent_metadata)
        else:
            logger.info("Agent CLI available", extra=self.agent_metadata)

    async def stop(self) -> None:
        await self.supervisor.shutdown()
        await self.bus.stop()

    def request_stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()

    async def run(self) -> None:
        """Serve until SIGINT/SIGTERM or :meth:`request_stop`."""

        self._stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_stop)
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()


def _resolve_runner(settings: WorkstationSettings) -> tuple[AgentRunner | None, dict[str, Any]]:
    metadata: dict[str, Any] = {"available": False, "path": None, "version": None, "error": None}
    try:
        runner = AgentRunner(
            Path(settings.agent_path) if settings.agent_path else None,
            command=settings.agent_command,
        )
    except AgentNotFoundError as exc:
        metadata["error"] = str(exc)
        return None, metadata
    metadata["available"] = True
    metadata["path"] = str(runner.executable)
    return runner, metadata


def create_daemon(
    settings: Optional[WorkstationSettings] = None,
    runner: AgentRunner | None = None,
) -> Daemon:
    """Build a daemon, locating the agent CLI unless a runner is supplied."""

    settings = settings or get_settings()
    if runner is not None:
        return Daemon(settings, runner=runner)
    resolved, metadata = _resolve_runner(settings)
    if resolved is None:
        logger.warning("Agent CLI unavailable; sessions cannot be spawned", extra=metadata)
    return Daemon(settings, runner=resolved, agent_metadata=metadata)


def main() -> None:
    """Entry point for running the daemon in the foreground."""

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    daemon = create_daemon(settings)
    logger.info(
        "Launching workstation daemon",
        extra={
            "version": __version__,
            "socket_path": str(settings.socket_path),
            "agent_available": daemon.agent_metadata.get("available"),
        },
    )
    asyncio.run(daemon.run())


if __name__ == "__main__":
    main()

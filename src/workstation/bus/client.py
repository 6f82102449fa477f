"""Client side of the daemon socket protocol."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator

from pydantic import BaseModel

from ..config import WorkstationSettings
from ..errors import InvalidRequestError, TimeoutExceededError, UnreachableError, WorkstationError
from .protocol import MAX_LINE_BYTES, encode

logger = logging.getLogger(__name__)

LIST_TIMEOUT = 5.0
DISPATCH_TIMEOUT = 10.0
ROUTE_TIMEOUT = 60.0
DISCOVER_TIMEOUT = 10.0
CREATE_TIMEOUT = 60.0


def read_descriptor(path: Path) -> dict[str, Any] | None:
    """Return the daemon descriptor, or None when it is missing or unreadable."""

    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return document if isinstance(document, dict) else None


def resolve_socket_path(default: Path, descriptor_path: Path | None = None) -> Path:
    if descriptor_path is not None:
        descriptor = read_descriptor(descriptor_path)
        socket_path = descriptor.get("socketPath") if descriptor else None
        if isinstance(socket_path, str) and socket_path:
            return Path(socket_path)
    return Path(default)


class DaemonClient:
    """Sends one JSON line per connection and reads at most one reply."""

    def __init__(
        self,
        socket_path: Path,
        *,
        descriptor_path: Path | None = None,
    ) -> None:
        self._default_socket = Path(socket_path)
        self._descriptor_path = Path(descriptor_path) if descriptor_path else None

    @classmethod
    def from_settings(cls, settings: WorkstationSettings) -> "DaemonClient":
        return cls(settings.socket_path, descriptor_path=settings.descriptor_path)

    @property
    def socket_path(self) -> Path:
        return resolve_socket_path(self._default_socket, self._descriptor_path)

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        path = self.socket_path
        if not path.exists():
            raise UnreachableError(f"Daemon socket {path} does not exist")
        try:
            return await asyncio.open_unix_connection(str(path), limit=MAX_LINE_BYTES)
        except OSError as exc:
            raise UnreachableError(f"Cannot connect to daemon at {path}: {exc}") from exc

    async def _exchange(self, payload: dict[str, Any] | BaseModel) -> dict[str, Any]:
        reader, writer = await self._connect()
        try:
            writer.write(encode(payload))
            await writer.drain()
            line = await reader.readline()
        except (ConnectionError, ValueError) as exc:
            raise UnreachableError(f"Connection to daemon failed: {exc}") from exc
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        if not line.strip():
            raise UnreachableError("Daemon closed the connection without responding")
        try:
            response = json.loads(line)
        except ValueError as exc:
            raise InvalidRequestError("Daemon returned invalid JSON") from exc
        if not isinstance(response, dict):
            raise InvalidRequestError("Daemon returned a non-object response")
        return response

    async def request(
        self, payload: dict[str, Any] | BaseModel, *, timeout: float = DISPATCH_TIMEOUT
    ) -> dict[str, Any]:
        """Send a command and wait up to ``timeout`` seconds for its response."""

        try:
            return await asyncio.wait_for(self._exchange(payload), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutExceededError(f"No response from daemon within {timeout:.1f}s") from exc

    async def ping(self, timeout: float = 1.0) -> bool:
        """True only if a daemon answers within ``timeout``; stale sockets count as down."""

        try:
            response = await self.request({"type": "ping"}, timeout=timeout)
        except WorkstationError:
            return False
        return bool(response)

    async def send_event(self, event: dict[str, Any] | BaseModel, *, timeout: float = 1.0) -> bool:
        """Deliver an event without waiting for the acknowledgement."""

        async def _deliver() -> None:
            _, writer = await self._connect()
            try:
                writer.write(encode(event))
                await writer.drain()
            finally:
                writer.close()
                with contextlib.suppress(Exception):
                    await writer.wait_closed()

        try:
            await asyncio.wait_for(_deliver(), timeout=timeout)
        except (WorkstationError, OSError, asyncio.TimeoutError):
            return False
        return True

    async def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        """Yield broadcast events until the daemon closes the stream."""

        reader, writer = await self._connect()
        try:
            writer.write(encode({"type": "subscribe"}))
            await writer.drain()
            first = await reader.readline()
            if not first:
                raise UnreachableError("Daemon closed the subscription")
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    yield json.loads(line)
                except ValueError:
                    logger.warning("Discarding malformed broadcast line")
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def route(self, query: str, message: str, *, timeout: float = ROUTE_TIMEOUT) -> dict[str, Any]:
        return await self.request({"type": "route", "query": query, "message": message}, timeout=timeout)

    async def dispatch(
        self, session_id: str, message: str, *, timeout: float = DISPATCH_TIMEOUT
    ) -> dict[str, Any]:
        return await self.request(
            {"type": "dispatch", "targetSessionId": session_id, "message": message},
            timeout=timeout,
        )

    async def list_workers(self, *, timeout: float = LIST_TIMEOUT) -> dict[str, Any]:
        return await self.request({"type": "list_workers"}, timeout=timeout)

    async def create_worker(
        self,
        repo: str,
        repo_path: str,
        task: str,
        *,
        task_id: str | None = None,
        timeout: float = CREATE_TIMEOUT,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "create_worker",
            "repo": repo,
            "repoPath": repo_path,
            "task": task,
        }
        if task_id:
            payload["taskId"] = task_id
        return await self.request(payload, timeout=timeout)

    async def discover_projects(
        self, path: str | None = None, *, timeout: float = DISCOVER_TIMEOUT
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "discover_projects"}
        if path:
            payload["path"] = path
        return await self.request(payload, timeout=timeout)

    async def checkpoint(
        self,
        session_id: str,
        session: dict[str, Any] | None = None,
        *,
        steps: list[dict[str, Any]] | None = None,
        timeout: float = DISPATCH_TIMEOUT,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "checkpoint", "sessionId": session_id}
        if session is not None:
            payload["session"] = session
        if steps:
            payload["steps"] = steps
        return await self.request(payload, timeout=timeout)

    async def close_session(self, session_id: str, *, timeout: float = DISPATCH_TIMEOUT) -> dict[str, Any]:
        return await self.request({"type": "close_session", "sessionId": session_id}, timeout=timeout)

    async def resume_session(self, session_id: str, *, timeout: float = ROUTE_TIMEOUT) -> dict[str, Any]:
        return await self.request({"type": "resume_session", "sessionId": session_id}, timeout=timeout)


__all__ = [
    "CREATE_TIMEOUT",
    "DISCOVER_TIMEOUT",
    "DISPATCH_TIMEOUT",
    "DaemonClient",
    "LIST_TIMEOUT",
    "ROUTE_TIMEOUT",
    "read_descriptor",
    "resolve_socket_path",
]

"""Unix-domain socket server for hook events and dispatch commands."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import BaseModel

from .. import __version__
from ..errors import InvalidRequestError, WorkstationError
from ..fsutil import atomic_write_text
from .protocol import (
    MAX_LINE_BYTES,
    PingCommand,
    SubscribeCommand,
    WireModel,
    encode,
    error,
    is_event,
    ok,
    parse_message,
)

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Any], Awaitable[dict[str, Any]]]
EventHandler = Callable[[Any], None]


class BusStartError(WorkstationError):
    """Raised when the socket cannot be bound at start-up."""

    code = "bind_failed"


class Subscription:
    """Bounded per-subscriber queue of broadcast events."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, document: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(document)
        except asyncio.QueueFull:
            self.dropped += 1

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            yield await self._queue.get()


def socket_is_live(path: Path, timeout: float = 0.5) -> bool:
    """Blocking probe used before unlinking an existing socket file."""

    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    probe.settimeout(timeout)
    try:
        probe.connect(str(path))
        probe.sendall(encode(PingCommand()))
        return bool(probe.recv(1024).strip())
    except OSError:
        return False
    finally:
        probe.close()


class EventBus:
    """Accepts one JSON line per connection and fans events out to subscribers.

    Events are applied to the registry through ``on_event`` and broadcast in
    the order their lines were read, which keeps each session's events in
    production order. Commands are answered on the same connection with the
    dictionary returned by ``on_command``.
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        descriptor_path: Path | None = None,
        on_command: CommandHandler | None = None,
        on_event: EventHandler | None = None,
        health_interval: float = 10.0,
        subscriber_queue_size: int = 1000,
    ) -> None:
        self._socket_path = Path(socket_path)
        self._descriptor_path = Path(descriptor_path) if descriptor_path else None
        self._on_command = on_command
        self._on_event = on_event
        self._health_interval = health_interval
        self._queue_size = subscriber_queue_size
        self._server: asyncio.AbstractServer | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._subscribers: set[Subscription] = set()
        self._connections: set[asyncio.Task[Any]] = set()
        self._started_at: datetime | None = None
        self._rebinds = 0

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def rebind_count(self) -> int:
        return self._rebinds

    async def start(self) -> None:
        self._started_at = datetime.now(timezone.utc)
        await self._bind()
        self._health_task = asyncio.create_task(self._health_loop(), name="workstation-socket-health")
        logger.info("Event bus listening", extra={"socket_path": str(self._socket_path)})

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        server = self._detach_server()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        if server is not None:
            # wait_closed also waits for open connections, so cancel those first.
            with contextlib.suppress(Exception):
                await server.wait_closed()
        self._socket_path.unlink(missing_ok=True)
        self._remove_descriptor()
        logger.info("Event bus stopped", extra={"socket_path": str(self._socket_path)})

    async def _bind(self) -> None:
        path = self._socket_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() or path.is_symlink():
            if await asyncio.to_thread(socket_is_live, path):
                raise BusStartError(f"Another daemon is already listening on {path}")
            logger.info("Removing stale socket file", extra={"socket_path": str(path)})
            path.unlink(missing_ok=True)
        try:
            self._server = await asyncio.start_unix_server(
                self._on_connection, path=str(path), limit=MAX_LINE_BYTES
            )
            os.chmod(path, 0o600)
        except OSError as exc:
            raise BusStartError(f"Failed to bind socket {path}: {exc}") from exc
        self._write_descriptor()

    def _detach_server(self) -> asyncio.AbstractServer | None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        return server

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            await self.check_socket()

    async def check_socket(self) -> bool:
        """Rebind when the socket file has disappeared; return True if it did."""

        if self._socket_path.exists():
            return False
        logger.warning("Socket file vanished, rebinding", extra={"socket_path": str(self._socket_path)})
        # Subscribers stay connected to the old listener until they hang up.
        self._detach_server()
        await self._bind()
        self._rebinds += 1
        return True

    def _write_descriptor(self) -> None:
        if self._descriptor_path is None:
            return
        started = self._started_at or datetime.now(timezone.utc)
        descriptor = {
            "socketPath": str(self._socket_path),
            "pid": os.getpid(),
            "startedAt": started.isoformat(),
            "version": __version__,
        }
        atomic_write_text(self._descriptor_path, json.dumps(descriptor, indent=2))

    def _remove_descriptor(self) -> None:
        if self._descriptor_path is None or not self._descriptor_path.exists():
            return
        try:
            descriptor = json.loads(self._descriptor_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            descriptor = {}
        if descriptor.get("pid") in (None, os.getpid()):
            self._descriptor_path.unlink(missing_ok=True)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self._queue_size)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, event: BaseModel | dict[str, Any]) -> None:
        if isinstance(event, WireModel):
            document = event.to_wire()
        elif isinstance(event, BaseModel):
            document = event.model_dump(mode="json", by_alias=True)
        else:
            document = dict(event)
        for subscription in list(self._subscribers):
            subscription.offer(document)

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            await self._serve(reader, writer)
        except asyncio.CancelledError:
            raise
        except Exception:  # one bad connection must not take the server down
            logger.exception("Unhandled error while serving connection")
            await self._reply(writer, error("Internal error", code="error"))
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            line = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError):
            await self._reply(writer, error("Message too large", code=InvalidRequestError.code))
            return
        except ConnectionError:
            return
        if not line.strip():
            return

        try:
            message = parse_message(line)
        except InvalidRequestError as exc:
            await self._reply(writer, error(str(exc), code=exc.code))
            return

        if isinstance(message, PingCommand):
            await self._reply(writer, ok(type="pong", pid=os.getpid(), version=__version__))
            return
        if isinstance(message, SubscribeCommand):
            await self._stream_to_subscriber(reader, writer)
            return
        if is_event(message):
            self.accept_event(message)
            await self._reply(writer, ok(received=message.type))
            return
        if self._on_command is None:
            await self._reply(writer, error("No command handler installed", code="unavailable"))
            return
        response = await self._on_command(message)
        await self._reply(writer, response)

    def accept_event(self, event: Any) -> None:
        """Apply an inbound event and broadcast it, synchronously."""

        if self._on_event is not None:
            try:
                self._on_event(event)
            except WorkstationError as exc:
                logger.warning(
                    "Event could not be applied",
                    extra={"type": event.type, "session_id": event.session_id, "error": str(exc)},
                )
        self.publish(event)

    async def _stream_to_subscriber(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        subscription = self.subscribe()
        eof = asyncio.create_task(reader.read())
        getter: asyncio.Task[dict[str, Any]] | None = None
        try:
            if not await self._reply(writer, ok(subscribed=True)):
                return
            while True:
                getter = asyncio.create_task(subscription.get())
                done, _ = await asyncio.wait({getter, eof}, return_when=asyncio.FIRST_COMPLETED)
                if eof in done:
                    return
                if not await self._reply(writer, getter.result()):
                    return
        finally:
            if getter is not None:
                getter.cancel()
            eof.cancel()
            self.unsubscribe(subscription)

    async def _reply(self, writer: asyncio.StreamWriter, document: dict[str, Any]) -> bool:
        if writer.is_closing():
            return False
        try:
            writer.write(encode(document))
            await writer.drain()
        except (ConnectionError, RuntimeError):
            # Fire-and-forget producers usually hang up before the ack arrives.
            return False
        return True


__all__ = ["BusStartError", "EventBus", "Subscription", "socket_is_live"]

from __future__ import annotations

import asyncio
import json
import socket
import stat
import time
from pathlib import Path

import pytest

from workstation import __version__
from workstation.bus import BusStartError, DaemonClient, EventBus, Subscription
from workstation.bus.protocol import ToolUseEvent, ok
from workstation.errors import NotFoundError


def _tool_event(session_id: str, target: str) -> dict:
    return {"type": "tool_use", "sessionId": session_id, "payload": {"tool": "Read", "target": target}}


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_events_are_acknowledged_applied_and_broadcast_in_order(short_tmp: Path) -> None:
    applied: list[str] = []
    bus = EventBus(short_tmp / "bus.sock", on_event=lambda event: applied.append(event.payload.target))
    client = DaemonClient(short_tmp / "bus.sock")

    async def scenario() -> list[dict]:
        await bus.start()
        subscription = bus.subscribe()
        try:
            for index in range(3):
                response = await client.request(_tool_event("s-1", f"file-{index}.py"), timeout=2.0)
                assert response == {"status": "ok", "received": "tool_use"}
            return [await subscription.get() for _ in range(3)]
        finally:
            await bus.stop()

    received = asyncio.run(scenario())

    assert applied == ["file-0.py", "file-1.py", "file-2.py"]
    assert [event["payload"]["target"] for event in received] == applied
    assert all(event["sessionId"] == "s-1" for event in received)


def test_socket_is_private_and_descriptor_is_written(short_tmp: Path) -> None:
    descriptor = short_tmp / "daemon.json"
    bus = EventBus(short_tmp / "bus.sock", descriptor_path=descriptor)

    async def scenario() -> tuple[int, dict]:
        await bus.start()
        try:
            mode = stat.S_IMODE((short_tmp / "bus.sock").stat().st_mode)
            return mode, json.loads(descriptor.read_text(encoding="utf-8"))
        finally:
            await bus.stop()

    mode, document = asyncio.run(scenario())

    assert mode == 0o600
    assert document["socketPath"] == str(short_tmp / "bus.sock")
    assert document["version"] == __version__
    assert isinstance(document["pid"], int)
    assert "startedAt" in document
    assert not descriptor.exists()
    assert not (short_tmp / "bus.sock").exists()


def test_client_follows_descriptor_socket_path(short_tmp: Path) -> None:
    descriptor = short_tmp / "daemon.json"
    bus = EventBus(short_tmp / "real.sock", descriptor_path=descriptor)
    client = DaemonClient(short_tmp / "default.sock", descriptor_path=descriptor)

    async def scenario() -> bool:
        await bus.start()
        try:
            return await client.ping(timeout=1.0)
        finally:
            await bus.stop()

    assert asyncio.run(scenario()) is True


def test_stale_socket_file_is_replaced(short_tmp: Path) -> None:
    path = short_tmp / "bus.sock"
    stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    stale.bind(str(path))
    stale.close()
    bus = EventBus(path)

    async def scenario() -> bool:
        await bus.start()
        try:
            return await DaemonClient(path).ping(timeout=1.0)
        finally:
            await bus.stop()

    assert asyncio.run(scenario()) is True


def test_second_daemon_cannot_steal_a_live_socket(short_tmp: Path) -> None:
    path = short_tmp / "bus.sock"
    first = EventBus(path)
    second = EventBus(path)

    async def scenario() -> None:
        await first.start()
        try:
            with pytest.raises(BusStartError):
                await second.start()
            assert await DaemonClient(path).ping(timeout=1.0)
        finally:
            await first.stop()

    asyncio.run(scenario())


def test_ping_is_false_for_missing_or_dead_sockets(short_tmp: Path) -> None:
    dead = short_tmp / "dead.sock"
    orphan = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    orphan.bind(str(dead))
    orphan.close()

    async def scenario() -> tuple[bool, bool, float]:
        started = time.monotonic()
        missing = await DaemonClient(short_tmp / "missing.sock").ping(timeout=1.0)
        refused = await DaemonClient(dead).ping(timeout=1.0)
        return missing, refused, time.monotonic() - started

    missing, refused, elapsed = asyncio.run(scenario())

    assert missing is False
    assert refused is False
    assert elapsed < 1.0


def test_ping_times_out_against_a_silent_listener(short_tmp: Path) -> None:
    path = short_tmp / "silent.sock"
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(path))
    listener.listen(1)

    try:
        started = time.monotonic()
        assert asyncio.run(DaemonClient(path).ping(timeout=0.3)) is False
        assert time.monotonic() - started < 2.0
    finally:
        listener.close()


def test_socket_subscriber_receives_broadcasts(short_tmp: Path) -> None:
    path = short_tmp / "bus.sock"
    bus = EventBus(path)
    client = DaemonClient(path)

    async def scenario() -> dict:
        await bus.start()
        stream = client.subscribe()
        try:
            pending = asyncio.create_task(anext(stream))
            await _wait_for(lambda: bus.subscriber_count == 1)
            bus.publish(ToolUseEvent(sessionId="s-9", payload={"tool": "Bash", "target": "make"}))
            return await asyncio.wait_for(pending, timeout=2.0)
        finally:
            await stream.aclose()
            await bus.stop()

    document = asyncio.run(scenario())

    assert document["type"] == "tool_use"
    assert document["sessionId"] == "s-9"
    assert document["payload"]["target"] == "make"


def test_commands_reach_handler_and_bad_input_is_rejected(short_tmp: Path) -> None:
    path = short_tmp / "bus.sock"
    seen: list[str] = []

    async def on_command(command) -> dict:
        seen.append(command.type)
        return ok(workers=[])

    bus = EventBus(path, on_command=on_command)
    client = DaemonClient(path)

    async def scenario() -> tuple[dict, dict, dict, dict]:
        await bus.start()
        try:
            listed = await client.list_workers(timeout=2.0)
            unknown = await client.request({"type": "reboot"}, timeout=2.0)
            invalid = await client.request({"type": "dispatch", "message": "hi"}, timeout=2.0)
            pong = await client.request({"type": "ping"}, timeout=2.0)
            return listed, unknown, invalid, pong
        finally:
            await bus.stop()

    listed, unknown, invalid, pong = asyncio.run(scenario())

    assert seen == ["list_workers"]
    assert listed == {"status": "ok", "workers": []}
    assert unknown["status"] == "error"
    assert unknown["code"] == "invalid"
    assert "Unknown message type" in unknown["message"]
    assert invalid["code"] == "invalid"
    assert pong["type"] == "pong"


def test_event_that_cannot_be_applied_is_still_broadcast(short_tmp: Path) -> None:
    def on_event(event) -> None:
        raise NotFoundError(f"Session '{event.session_id}' not found")

    bus = EventBus(short_tmp / "bus.sock", on_event=on_event)

    async def scenario() -> dict:
        await bus.start()
        subscription = bus.subscribe()
        try:
            response = await DaemonClient(short_tmp / "bus.sock").request(_tool_event("ghost", "x"), timeout=2.0)
            assert response["status"] == "ok"
            return await asyncio.wait_for(subscription.get(), timeout=1.0)
        finally:
            await bus.stop()

    assert asyncio.run(scenario())["sessionId"] == "ghost"


def test_check_socket_rebinds_after_file_removal(short_tmp: Path) -> None:
    path = short_tmp / "bus.sock"
    bus = EventBus(path)

    async def scenario() -> tuple[bool, bool, bool]:
        await bus.start()
        try:
            untouched = await bus.check_socket()
            path.unlink()
            rebound = await bus.check_socket()
            alive = await DaemonClient(path).ping(timeout=1.0)
            return untouched, rebound, alive
        finally:
            await bus.stop()

    untouched, rebound, alive = asyncio.run(scenario())

    assert untouched is False
    assert rebound is True
    assert alive is True
    assert bus.rebind_count == 1


def test_slow_subscriber_drops_instead_of_blocking() -> None:
    async def scenario() -> Subscription:
        subscription = Subscription(maxsize=2)
        for index in range(5):
            subscription.offer({"index": index})
        return subscription

    subscription = asyncio.run(scenario())

    assert subscription.pending() == 2
    assert subscription.dropped == 3

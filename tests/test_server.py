from __future__ import annotations

import asyncio
from pathlib import Path

from fastmcp import FastMCP

from workstation.bus import DaemonClient, EventBus
from workstation.bus.protocol import ok
from workstation.server import create_server


def test_create_server_exposes_tool_handles(settings) -> None:
    server = create_server(settings)

    assert isinstance(server, FastMCP)
    assert isinstance(server.daemon_client, DaemonClient)  # type: ignore[attr-defined]
    assert server.daemon_client.socket_path == settings.socket_path  # type: ignore[attr-defined]
    handles = server.tool_handles  # type: ignore[attr-defined]
    assert handles.route.name == "route"
    assert handles.create_worker.name == "create_worker"


def test_ping_tool_reports_daemon_state(settings) -> None:
    server = create_server(settings)
    handles = server.tool_handles  # type: ignore[attr-defined]

    down = asyncio.run(handles.ping.fn())

    assert down["running"] is False
    assert Path(down["socketPath"]) == settings.socket_path


def test_list_workers_tool_talks_to_running_daemon(settings) -> None:
    async def on_command(command) -> dict:
        return ok(workers=[{"sessionId": "api-1", "repo": "api"}], count=1)

    bus = EventBus(settings.socket_path, on_command=on_command)
    server = create_server(settings)
    handles = server.tool_handles  # type: ignore[attr-defined]

    async def scenario() -> dict:
        await bus.start()
        try:
            return await handles.list_workers.fn()
        finally:
            await bus.stop()

    response = asyncio.run(scenario())

    assert response["count"] == 1
    assert response["workers"][0]["sessionId"] == "api-1"

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from workstation.errors import NoMatchError, UnreachableError
from workstation.tools import register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubClient:
    def __init__(self, *, live: bool = True) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.live = live
        self.socket_path = Path("/tmp/stub.sock")

    async def ping(self, timeout: float = 1.0) -> bool:
        self.calls.append(("ping", (), {"timeout": timeout}))
        return self.live

    async def route(self, query: str, message: str) -> dict[str, Any]:
        self.calls.append(("route", (query, message), {}))
        if query == "nowhere":
            raise NoMatchError("No session or project matches 'nowhere'.", suggestions=["now"])
        return {"status": "ok", "targetSessionId": f"{query}-1", "repo": query}

    async def dispatch(self, session_id: str, message: str) -> dict[str, Any]:
        self.calls.append(("dispatch", (session_id, message), {}))
        if not self.live:
            raise UnreachableError("Daemon socket /tmp/stub.sock does not exist")
        return {"status": "ok", "targetSessionId": session_id}

    async def list_workers(self) -> dict[str, Any]:
        self.calls.append(("list_workers", (), {}))
        return {"status": "ok", "workers": [{"sessionId": "api-1"}], "count": 1}

    async def create_worker(self, repo, repo_path, task, *, task_id=None) -> dict[str, Any]:
        self.calls.append(("create_worker", (repo, repo_path, task), {"task_id": task_id}))
        return {"status": "ok", "newSessionId": f"{repo}-2"}

    async def discover_projects(self, path=None) -> dict[str, Any]:
        self.calls.append(("discover_projects", (path,), {}))
        return {"status": "ok", "discovered": [], "total": 0, "newCount": 0}


def test_register_tools_exposes_the_dispatch_command_set() -> None:
    server = StubServer()

    register_tools(server, client=StubClient())  # type: ignore[arg-type]

    assert sorted(server._tools) == [
        "create_worker",
        "discover_projects",
        "dispatch",
        "list_workers",
        "ping",
        "route",
    ]


def test_tools_forward_to_the_daemon_client() -> None:
    server = StubServer()
    client = StubClient()
    handles = register_tools(server, client=client, ping_timeout=0.5)  # type: ignore[arg-type]

    async def scenario() -> list[dict[str, Any]]:
        return [
            await handles.route.fn("api", "run the tests"),  # type: ignore[attr-defined]
            await handles.dispatch.fn("api-1", "hello"),  # type: ignore[attr-defined]
            await handles.list_workers.fn(),  # type: ignore[attr-defined]
            await handles.create_worker.fn("api", "/srv/api", "search", task_id="t-9"),  # type: ignore[attr-defined]
            await handles.discover_projects.fn("/srv"),  # type: ignore[attr-defined]
            await handles.ping.fn(),  # type: ignore[attr-defined]
        ]

    routed, dispatched, listed, created, discovered, pinged = asyncio.run(scenario())

    assert routed["targetSessionId"] == "api-1"
    assert dispatched["status"] == "ok"
    assert listed["count"] == 1
    assert created["newSessionId"] == "api-2"
    assert discovered["newCount"] == 0
    assert pinged == {"status": "ok", "running": True, "socketPath": "/tmp/stub.sock"}
    assert ("create_worker", ("api", "/srv/api", "search"), {"task_id": "t-9"}) in client.calls
    assert ("ping", (), {"timeout": 0.5}) in client.calls


def test_tool_errors_become_error_payloads() -> None:
    server = StubServer()
    handles = register_tools(server, client=StubClient(live=False))  # type: ignore[arg-type]

    async def scenario() -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        return (
            await handles.route.fn("nowhere", "hi"),  # type: ignore[attr-defined]
            await handles.dispatch.fn("api-1", "hi"),  # type: ignore[attr-defined]
            await handles.ping.fn(),  # type: ignore[attr-defined]
        )

    routed, dispatched, pinged = asyncio.run(scenario())

    assert routed["status"] == "error"
    assert routed["code"] == "no_match"
    assert dispatched["code"] == "unreachable"
    assert pinged["running"] is False

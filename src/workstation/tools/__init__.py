"""MCP tool registration: the dispatch command set, forwarded over the daemon socket."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable

from fastmcp import Context, FastMCP

from ..bus.client import DaemonClient
from ..bus.protocol import error
from ..errors import WorkstationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    route: Any
    dispatch: Any
    list_workers: Any
    create_worker: Any
    discover_projects: Any
    ping: Any


def register_tools(server: FastMCP, *, client: DaemonClient, ping_timeout: float = 1.0) -> ToolHandles:
    """Register every dispatch tool on ``server`` and return their handles."""

    async def _forward(
        context: Context | None, name: str, awaitable: Awaitable[dict[str, Any]]
    ) -> dict[str, Any]:
        try:
            response = await awaitable
        except WorkstationError as exc:
            response = error(str(exc), code=exc.code)
        level = "debug" if response.get("status") == "ok" else "warning"
        _emit_log(context, level, f"Tool {name} finished", extra={"status": response.get("status")})
        return response

    async def _route(query: str, message: str, context: Context | None = None) -> dict[str, Any]:
        """Send a message to the session that best matches a repo, task or path query."""

        return await _forward(context, "route", client.route(query, message))

    async def _dispatch(session_id: str, message: str, context: Context | None = None) -> dict[str, Any]:
        return await _forward(context, "dispatch", client.dispatch(session_id, message))

    async def _list_workers(context: Context | None = None) -> dict[str, Any]:
        return await _forward(context, "list_workers", client.list_workers())

    async def _create_worker(
        repo: str,
        repo_path: str,
        task: str,
        task_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        return await _forward(
            context, "create_worker", client.create_worker(repo, repo_path, task, task_id=task_id)
        )

    async def _discover_projects(path: str | None = None, context: Context | None = None) -> dict[str, Any]:
        return await _forward(context, "discover_projects", client.discover_projects(path))

    async def _ping(context: Context | None = None) -> dict[str, Any]:
        live = await client.ping(timeout=ping_timeout)
        return {"status": "ok", "running": live, "socketPath": str(client.socket_path)}

    tool_route = server.tool(
        name="route",
        description=(
            "Route a message to the running session that best matches the query (repo name, "
            "task or step id, or path). Starts a session for a known project when none matches."
        ),
    )(_route)

    tool_dispatch = server.tool(
        name="dispatch",
        description="Send a message to one session by its exact session id.",
    )(_dispatch)

    tool_list = server.tool(
        name="list_workers",
        description="List running sessions with their repo, task, current step and recent activity.",
    )(_list_workers)

    tool_create = server.tool(
        name="create_worker",
        description=(
            "Start a new session for a repository path with a task name, even when the "
            "repository already has a session."
        ),
    )(_create_worker)

    tool_discover = server.tool(
        name="discover_projects",
        description="Scan a directory (or the configured scan paths) for repositories and index them.",
    )(_discover_projects)

    tool_ping = server.tool(
        name="ping",
        description="Report whether the workstation daemon is running.",
    )(_ping)

    return ToolHandles(
        route=tool_route,
        dispatch=tool_dispatch,
        list_workers=tool_list,
        create_worker=tool_create,
        discover_projects=tool_discover,
        ping=tool_ping,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]

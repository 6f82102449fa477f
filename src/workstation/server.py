"""FastMCP server exposing the workstation command set to an orchestrator agent."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .bus.client import DaemonClient, read_descriptor
from .checkpoints import CheckpointStore
from .config import WorkstationSettings, configure_logging, get_settings
from .tools import register_tools


def create_server(
    settings: Optional[WorkstationSettings] = None,
    client: DaemonClient | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the dispatch tools and a status resource."""

    settings = settings or get_settings()
    client = client or DaemonClient.from_settings(settings)
    checkpoints = CheckpointStore(settings.checkpoint_dir)

    server = FastMCP(
        name="Workstation MCP",
        version=__version__,
        instructions=(
            "Workstation routes work to coding-agent sessions running in separate "
            "repositories. Use route for free-text targets, dispatch for exact session "
            "ids, and list_workers to see what each session is doing."
        ),
    )

    handles = register_tools(server, client=client, ping_timeout=settings.ping_timeout)

    @server.resource(
        "resource://workstation/status",
        name="workstation_status",
        description="Daemon descriptor, running sessions and saved checkpoints.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing daemon and checkpoint state."""

        live = await client.ping(timeout=settings.ping_timeout)
        workers: list = []
        worker_error: str | None = None
        if live:
            response = await client.list_workers()
            if response.get("status") == "ok":
                workers = response.get("workers", [])
            else:
                worker_error = response.get("message")

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "daemon": {
                "running": live,
                "socket_path": str(client.socket_path),
                "descriptor": read_descriptor(settings.descriptor_path),
            },
            "workers": {"count": len(workers), "items": workers, "error": worker_error},
            "checkpoints": checkpoints.summaries()[:10],
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "daemon_client", client)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching workstation MCP server",
        extra={"version": __version__, "socket_path": str(settings.socket_path)},
    )
    server.run()


if __name__ == "__main__":
    main()

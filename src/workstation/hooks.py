"""Hook producer: turns an agent tool-use hook payload into a ``tool_use`` event.

Invoked as ``workstation-hook post-tool-use`` or ``workstation-hook
pre-tool-use`` with the agent's hook JSON on stdin. Only the tool name and
a short target string leave the process, plus the structured input of the
interactive tools a remote client has to render. Delivery is best-effort:
the process always exits 0 and never writes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Mapping, TextIO

from .agents.utils import SESSION_ENV_VAR
from .bus.client import DaemonClient
from .bus.protocol import MAX_TARGET, EventContext, ToolPayload, ToolUseEvent
from .config import WorkstationSettings

TARGET_KEYS = ("file_path", "pattern", "command", "url", "query")
COMMAND_PREVIEW = 80
INTERACTIVE_TOOLS = frozenset({"AskUserQuestion", "ExitPlanMode"})
HOOK_KINDS = ("post-tool-use", "pre-tool-use")


def extract_target(tool_input: Mapping[str, Any]) -> str:
    for key in TARGET_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            if key == "command":
                value = value[:COMMAND_PREVIEW]
            return value[:MAX_TARGET]
    return ""


def resolve_session_id(hook: Mapping[str, Any], env: Mapping[str, str]) -> str:
    for candidate in (env.get(SESSION_ENV_VAR), hook.get("session_id")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return "unknown"


def build_event(
    hook: Mapping[str, Any],
    *,
    kind: str = "post-tool-use",
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> ToolUseEvent | None:
    """Build the wire event, or None when the payload names no tool."""

    tool = hook.get("tool_name")
    if not isinstance(tool, str) or not tool:
        return None
    tool_input = hook.get("tool_input")
    if not isinstance(tool_input, dict):
        tool_input = {}

    workdir = hook.get("cwd") if isinstance(hook.get("cwd"), str) else None
    project_path = Path(workdir) if workdir else (cwd or Path.cwd())

    payload: dict[str, Any] = {"tool": tool, "target": extract_target(tool_input)}
    if kind == "pre-tool-use":
        payload["needsApproval"] = True
    if tool in INTERACTIVE_TOOLS and tool_input:
        payload["toolInput"] = tool_input

    return ToolUseEvent(
        sessionId=resolve_session_id(hook, env if env is not None else os.environ),
        context=EventContext(project=project_path.name, projectPath=str(project_path)),
        payload=ToolPayload.model_validate(payload),
    )


def forward(hook: Mapping[str, Any], kind: str, settings: WorkstationSettings) -> bool:
    event = build_event(hook, kind=kind)
    if event is None:
        return False
    client = DaemonClient.from_settings(settings)
    if not client.socket_path.exists():
        return False
    return asyncio.run(client.send_event(event, timeout=settings.event_timeout))


def main(argv: list[str] | None = None, *, stdin: TextIO | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    kind = args[0] if args and args[0] in HOOK_KINDS else "post-tool-use"
    stream = stdin or sys.stdin
    try:
        if stream.isatty():
            return 0
        raw = stream.read()
        if not raw.strip():
            return 0
        hook = json.loads(raw)
        if isinstance(hook, dict):
            forward(hook, kind, WorkstationSettings())
    except Exception:  # telemetry loss must never fail the instrumented tool call
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

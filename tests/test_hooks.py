from __future__ import annotations

import asyncio
import io
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from workstation import hooks
from workstation.bus import EventBus

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def _hook(tool: str, tool_input: dict, **extra) -> dict:
    return {"session_id": "agent-abc", "tool_name": tool, "tool_input": tool_input, **extra}


def test_target_prefers_file_path_then_pattern_command_url_query() -> None:
    assert hooks.extract_target({"pattern": "TODO", "file_path": "src/a.py"}) == "src/a.py"
    assert hooks.extract_target({"command": "x" * 200, "url": "https://example.com"}) == "x" * 80
    assert hooks.extract_target({"url": "https://example.com", "query": "docs"}) == "https://example.com"
    assert hooks.extract_target({"query": "q" * 400}) == "q" * 256
    assert hooks.extract_target({"content": "ignored"}) == ""


def test_session_id_comes_from_environment_before_hook_payload() -> None:
    hook = _hook("Read", {"file_path": "a.py"})

    assert hooks.resolve_session_id(hook, {"WORKSTATION_SESSION_ID": "api-1"}) == "api-1"
    assert hooks.resolve_session_id(hook, {}) == "agent-abc"
    assert hooks.resolve_session_id({}, {}) == "unknown"


def test_build_event_for_post_tool_use(tmp_path: Path) -> None:
    event = hooks.build_event(
        _hook("Edit", {"file_path": "src/app.py", "old_string": "a", "new_string": "b"}),
        env={},
        cwd=tmp_path,
    )

    wire = event.to_wire()
    assert wire["type"] == "tool_use"
    assert wire["sessionId"] == "agent-abc"
    assert wire["payload"] == {"tool": "Edit", "target": "src/app.py"}
    assert wire["context"] == {"project": tmp_path.name, "projectPath": str(tmp_path)}


def test_pre_tool_use_marks_approval_and_keeps_interactive_input() -> None:
    question = {"questions": [{"question": "Deploy now?", "options": ["yes", "no"]}]}

    asked = hooks.build_event(
        _hook("AskUserQuestion", question, cwd="/srv/api"), kind="pre-tool-use", env={}
    )
    bash = hooks.build_event(_hook("Bash", {"command": "rm -rf build"}), kind="pre-tool-use", env={})

    assert asked.payload.needs_approval is True
    assert asked.payload.tool_input == question
    assert asked.context.project == "api"
    assert bash.payload.needs_approval is True
    assert bash.payload.tool_input is None


def test_payload_without_tool_is_ignored() -> None:
    assert hooks.build_event({"tool_input": {}}, env={}) is None


def test_main_without_daemon_is_silent(
    monkeypatch: pytest.MonkeyPatch, short_tmp: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("WORKSTATION_HOME", str(short_tmp / "home"))
    monkeypatch.setenv("WORKSTATION_SOCKET_PATH", str(short_tmp / "missing.sock"))
    stdin = io.StringIO(json.dumps(_hook("Read", {"file_path": "a.py"})))

    assert hooks.main(["post-tool-use"], stdin=stdin) == 0
    assert hooks.main([], stdin=io.StringIO("{not json")) == 0
    assert hooks.main([], stdin=io.StringIO("")) == 0

    captured = capsys.readouterr()
    assert captured.err == ""
    assert captured.out == ""


def test_main_delivers_event_to_running_daemon(monkeypatch: pytest.MonkeyPatch, short_tmp: Path) -> None:
    socket_path = short_tmp / "bus.sock"
    monkeypatch.setenv("WORKSTATION_HOME", str(short_tmp / "home"))
    monkeypatch.setenv("WORKSTATION_SOCKET_PATH", str(socket_path))
    monkeypatch.setenv("WORKSTATION_SESSION_ID", "api-7")
    bus = EventBus(socket_path)

    async def scenario() -> dict:
        await bus.start()
        subscription = bus.subscribe()
        try:
            stdin = io.StringIO(json.dumps(_hook("Grep", {"pattern": "TODO"}, cwd="/srv/api")))
            code = await asyncio.to_thread(hooks.main, ["post-tool-use"], stdin=stdin)
            assert code == 0
            return await asyncio.wait_for(subscription.get(), timeout=2.0)
        finally:
            await bus.stop()

    event = asyncio.run(scenario())

    assert event["sessionId"] == "api-7"
    assert event["payload"] == {"tool": "Grep", "target": "TODO"}
    assert event["context"]["projectPath"] == "/srv/api"


def test_hook_process_exits_zero_without_stderr(short_tmp: Path) -> None:
    env = {
        **os.environ,
        "PYTHONPATH": str(SRC_DIR),
        "WORKSTATION_HOME": str(short_tmp / "home"),
        "WORKSTATION_SOCKET_PATH": str(short_tmp / "absent.sock"),
    }

    result = subprocess.run(
        [sys.executable, "-m", "workstation.hooks", "pre-tool-use"],
        input=json.dumps(_hook("Bash", {"command": "ls"})),
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
        check=False,
    )

    assert result.returncode == 0
    assert result.stderr == ""

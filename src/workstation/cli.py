"""Command-line front end for the workstation daemon."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable

import yaml
from pydantic import ValidationError

from . import __version__
from .bus.client import DaemonClient
from .bus.protocol import StepEdit, error
from .checkpoints import CheckpointStore
from .config import WorkstationSettings, configure_logging
from .errors import InvalidRequestError, WorkstationError
from .gateway import apply_step_edits
from .sessions.models import Session


def _emit(payload: dict[str, Any]) -> int:
    print(json.dumps(payload, indent=2, default=str))
    return 0 if payload.get("status") == "ok" else 1


def _call(awaitable: Awaitable[dict[str, Any]]) -> int:
    try:
        response = asyncio.run(awaitable)  # type: ignore[arg-type]
    except WorkstationError as exc:
        response = error(str(exc), code=exc.code)
    return _emit(response)


def _client(settings: WorkstationSettings) -> DaemonClient:
    return DaemonClient.from_settings(settings)


def cmd_daemon(args: argparse.Namespace) -> int:
    from .daemon import create_daemon

    settings = WorkstationSettings()
    configure_logging(settings.log_level, settings.log_file)
    daemon = create_daemon(settings)
    asyncio.run(daemon.run())
    return 0


def cmd_ping(args: argparse.Namespace) -> int:
    settings = WorkstationSettings()
    client = _client(settings)
    live = asyncio.run(client.ping(timeout=settings.ping_timeout))
    payload = {"status": "ok" if live else "error", "running": live, "socketPath": str(client.socket_path)}
    if not live:
        payload["message"] = "Daemon is not running"
    return _emit(payload)


def cmd_route(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.route(args.query, " ".join(args.message)))


def cmd_dispatch(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.dispatch(args.session_id, " ".join(args.message)))


def cmd_list_workers(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.list_workers())


def cmd_create_worker(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.create_worker(args.repo, args.path, args.task, task_id=args.task_id))


def cmd_discover_projects(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.discover_projects(args.path))


def cmd_close(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.close_session(args.session_id))


def cmd_resume(args: argparse.Namespace) -> int:
    client = _client(WorkstationSettings())
    return _call(client.resume_session(args.session_id))


def _read_snapshot(path: Path, session_id: str) -> Session:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidRequestError(f"Cannot read session snapshot {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise InvalidRequestError(f"Session snapshot {path} must be a mapping")
    document["session_id"] = session_id
    try:
        return Session.model_validate(document)
    except ValidationError as exc:
        raise InvalidRequestError(f"Invalid session snapshot: {exc.error_count()} error(s)") from exc


def step_edits(args: argparse.Namespace) -> list[StepEdit]:
    """Translate --start/--complete/--block into ordered step edits."""

    edits: list[dict[str, Any]] = []
    if args.start:
        edits.append({"action": "start", "stepId": args.start, "name": args.name, "notes": args.notes})
    if args.complete:
        edits.append({"action": "complete", "stepId": args.complete, "outcome": args.outcome})
    if args.block:
        edits.append({"action": "block", "stepId": args.block, "reason": args.reason})
    try:
        return [StepEdit.model_validate(edit) for edit in edits]
    except ValidationError as exc:
        raise InvalidRequestError(f"Invalid step edit: {exc.error_count()} error(s)") from exc


def cmd_checkpoint_save(args: argparse.Namespace) -> int:
    """Save through the daemon when it is up, otherwise straight to disk."""

    settings = WorkstationSettings()
    client = _client(settings)
    store = CheckpointStore(settings.checkpoint_dir)
    try:
        edits = step_edits(args)
        snapshot = _read_snapshot(Path(args.source), args.session_id) if args.source else None
        if asyncio.run(client.ping(timeout=settings.ping_timeout)):
            document = snapshot.model_dump(mode="json") if snapshot is not None else None
            steps = [edit.to_wire() for edit in edits]
            return _call(client.checkpoint(args.session_id, document, steps=steps))
        session = snapshot if snapshot is not None else store.load(args.session_id)
        apply_step_edits(session, edits)
        path = store.save(session)
    except WorkstationError as exc:
        return _emit(error(str(exc), code=exc.code))
    return _emit({"status": "ok", "sessionId": session.session_id, "path": str(path), "direct": True})


def cmd_checkpoint_show(args: argparse.Namespace) -> int:
    store = CheckpointStore(WorkstationSettings().checkpoint_dir)
    try:
        session = store.load(args.session_id)
    except WorkstationError as exc:
        return _emit(error(str(exc), code=exc.code))
    return _emit({"status": "ok", "session": session.model_dump(mode="json")})


def cmd_checkpoint_list(args: argparse.Namespace) -> int:
    store = CheckpointStore(WorkstationSettings().checkpoint_dir)
    return _emit({"status": "ok", "checkpoints": store.summaries()})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="workstation", description="Workstation session daemon")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_daemon = sub.add_parser("daemon", help="Run the daemon in the foreground")
    p_daemon.set_defaults(func=cmd_daemon)

    p_ping = sub.add_parser("ping", help="Check whether the daemon is running")
    p_ping.set_defaults(func=cmd_ping)

    p_route = sub.add_parser("route", help="Send a message to the best-matching session")
    p_route.add_argument("query")
    p_route.add_argument("message", nargs="+")
    p_route.set_defaults(func=cmd_route)

    p_dispatch = sub.add_parser("dispatch", help="Send a message to an exact session id")
    p_dispatch.add_argument("session_id")
    p_dispatch.add_argument("message", nargs="+")
    p_dispatch.set_defaults(func=cmd_dispatch)

    p_list = sub.add_parser("list-workers", help="List running sessions")
    p_list.set_defaults(func=cmd_list_workers)

    p_create = sub.add_parser("create-worker", help="Start a new session for a repository")
    p_create.add_argument("repo")
    p_create.add_argument("path")
    p_create.add_argument("--task", required=True, help="Task name that tells sibling sessions apart")
    p_create.add_argument("--task-id")
    p_create.set_defaults(func=cmd_create_worker)

    p_discover = sub.add_parser("discover-projects", help="Scan for repositories")
    p_discover.add_argument("path", nargs="?")
    p_discover.set_defaults(func=cmd_discover_projects)

    p_close = sub.add_parser("close", help="Terminate a session")
    p_close.add_argument("session_id")
    p_close.set_defaults(func=cmd_close)

    p_resume = sub.add_parser("resume", help="Respawn a checkpointed session")
    p_resume.add_argument("session_id")
    p_resume.set_defaults(func=cmd_resume)

    p_checkpoint = sub.add_parser("checkpoint", help="Save or inspect checkpoints")
    checkpoint_sub = p_checkpoint.add_subparsers(dest="checkpoint_cmd")

    p_save = checkpoint_sub.add_parser("save", help="Save a session checkpoint")
    p_save.add_argument("session_id")
    p_save.add_argument("--from", dest="source", help="YAML or JSON session snapshot to save")
    p_save.add_argument("--start", metavar="STEP", help="Mark STEP in progress")
    p_save.add_argument("--name", help="Name for a newly started step")
    p_save.add_argument("--notes")
    p_save.add_argument("--complete", metavar="STEP", help="Mark STEP completed")
    p_save.add_argument("--outcome")
    p_save.add_argument("--block", metavar="STEP", help="Mark STEP blocked")
    p_save.add_argument("--reason")
    p_save.set_defaults(func=cmd_checkpoint_save)

    p_show = checkpoint_sub.add_parser("show", help="Print one checkpoint")
    p_show.add_argument("session_id")
    p_show.set_defaults(func=cmd_checkpoint_show)

    p_clist = checkpoint_sub.add_parser("list", help="Summarize all checkpoints")
    p_clist.set_defaults(func=cmd_checkpoint_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())

"""Workstation diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from workstation.bus.client import DaemonClient, read_descriptor
from workstation.checkpoints import CheckpointStore
from workstation.config import WorkstationSettings
from workstation.errors import WorkstationError
from workstation.projects import ProjectIndex


def load_store(settings: WorkstationSettings) -> CheckpointStore:
    return CheckpointStore(settings.checkpoint_dir)


def load_projects(settings: WorkstationSettings) -> ProjectIndex:
    return ProjectIndex(settings.projects_file)


def cmd_checkpoints(args: argparse.Namespace) -> None:
    settings = WorkstationSettings()
    rows = load_store(settings).summaries()
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(
                f"{row['session_id']} [{row['status']}] {row['repo']} :: "
                f"{row['task']} -> {row.get('current_step')}"
            )


def cmd_show(args: argparse.Namespace) -> None:
    settings = WorkstationSettings()
    store = load_store(settings)
    try:
        session = store.recover(args.session_id) if args.recover else store.load(args.session_id)
    except WorkstationError as exc:
        print(f"Checkpoint unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps(session.model_dump(mode="json"), indent=2))


def cmd_projects(args: argparse.Namespace) -> None:
    settings = WorkstationSettings()
    projects = load_projects(settings).all()
    if args.status:
        projects = [project for project in projects if project.status.value == args.status]
    print(json.dumps([project.model_dump(mode="json") for project in projects], indent=2))


def cmd_cleanup(args: argparse.Namespace) -> None:
    settings = WorkstationSettings()
    days = args.days if args.days is not None else settings.stale_checkpoint_days
    store = load_store(settings)
    if args.dry_run:
        print(json.dumps({"dry_run": True, "stale": store.stale(days), "max_age_days": days}, indent=2))
        return
    removed = store.cleanup_stale(days)
    print(json.dumps({"removed": removed, "max_age_days": days}, indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    settings = WorkstationSettings()
    client = DaemonClient.from_settings(settings)
    live = asyncio.run(client.ping(timeout=settings.ping_timeout))
    payload = {
        "running": live,
        "socket_path": str(client.socket_path),
        "descriptor": read_descriptor(settings.descriptor_path),
        "checkpoints": len(load_store(settings).list()),
        "projects": len(load_projects(settings)),
    }
    if live:
        try:
            response = asyncio.run(client.list_workers())
        except WorkstationError as exc:
            payload["workers_error"] = str(exc)
        else:
            payload["workers"] = response.get("workers", [])
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Workstation diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_checkpoints = sub.add_parser("checkpoints", help="Summarize saved checkpoints")
    p_checkpoints.add_argument("--json", action="store_true", help="Output JSON")
    p_checkpoints.set_defaults(func=cmd_checkpoints)

    p_show = sub.add_parser("show", help="Print one checkpoint")
    p_show.add_argument("session_id")
    p_show.add_argument(
        "--recover",
        action="store_true",
        help="Apply crash recovery (keep a single in-progress step) before printing",
    )
    p_show.set_defaults(func=cmd_show)

    p_projects = sub.add_parser("projects", help="List indexed projects")
    p_projects.add_argument("--status", choices=["active", "idle", "paused"])
    p_projects.set_defaults(func=cmd_projects)

    p_cleanup = sub.add_parser("cleanup", help="Delete checkpoints older than N days")
    p_cleanup.add_argument("--days", type=int, default=None)
    p_cleanup.add_argument("--dry-run", action="store_true")
    p_cleanup.set_defaults(func=cmd_cleanup)

    p_status = sub.add_parser("status", help="Show daemon liveness and counts")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()

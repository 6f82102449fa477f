from __future__ import annotations

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from workstation.config import WorkstationSettings
from workstation.sessions.models import Session, SessionRole

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "WORKSTATION_HOME",
        "WORKSTATION_SOCKET_PATH",
        "WORKSTATION_SESSION_ID",
        "WORKSTATION_SCAN_PATHS",
        "WORKSTATION_ALLOWED_ROOTS",
        "WORKSTATION_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def short_tmp() -> Path:
    """A short directory under /tmp; AF_UNIX paths are limited to ~100 bytes."""

    path = Path(tempfile.mkdtemp(prefix="ws-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(tmp_path: Path, short_tmp: Path) -> WorkstationSettings:
    (tmp_path / "projects").mkdir()
    return WorkstationSettings(
        home_dir=tmp_path / "home",
        socket_path=short_tmp / "ws.sock",
        allowed_roots=(tmp_path,),
        scan_paths=(tmp_path / "projects",),
        ready_timeout=2.0,
        socket_health_interval=30.0,
    )


def make_session(
    session_id: str,
    repo: str,
    *,
    task: str | None = None,
    repo_path: str | None = None,
    minutes: int = 0,
    role: SessionRole = SessionRole.WORKER,
) -> Session:
    session = Session.new(
        session_id=session_id,
        repo=repo,
        repo_path=repo_path or f"/home/dev/projects/{repo}",
        task_name=task or repo,
        role=role,
    )
    session.created_at = BASE_TIME
    session.last_active = BASE_TIME + timedelta(minutes=minutes)
    return session

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from workstation.config import (
    SKIP_PERMISSIONS_FLAG,
    RuntimeConfig,
    StationConfig,
    WorkstationSettings,
    configure_logging,
    load_station_config,
    save_station_config,
)


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WORKSTATION_HOME", str(tmp_path / "ws"))
    monkeypatch.setenv("WORKSTATION_SOCKET_PATH", str(tmp_path / "ws.sock"))
    monkeypatch.setenv("WORKSTATION_SCAN_PATHS", os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")]))
    monkeypatch.setenv("WORKSTATION_LOG_LEVEL", "debug")

    settings = WorkstationSettings()

    assert settings.home_dir == tmp_path / "ws"
    assert settings.socket_path == tmp_path / "ws.sock"
    assert settings.scan_paths == (tmp_path / "a", tmp_path / "b")
    assert settings.log_level == "DEBUG"
    assert settings.descriptor_path == tmp_path / "ws" / "daemon.json"
    assert settings.checkpoint_dir == tmp_path / "ws" / "sessions"
    assert settings.projects_file == tmp_path / "ws" / "projects.yaml"


def test_settings_defaults() -> None:
    settings = WorkstationSettings()

    assert settings.socket_path == Path("/tmp/workstation.sock")
    assert settings.home_dir == Path.home() / ".workstation"
    assert Path.home() in settings.allowed_roots
    assert settings.stale_checkpoint_days == 30


@pytest.mark.parametrize(
    "name, value",
    [
        ("WORKSTATION_LOG_LEVEL", "chatty"),
        ("WORKSTATION_PING_TIMEOUT", "0"),
        ("WORKSTATION_DISCOVERY_MAX_DEPTH", "-1"),
    ],
)
def test_invalid_settings_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        WorkstationSettings()


def test_station_config_round_trip_keeps_other_keys(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("theme: dark\n", encoding="utf-8")

    save_station_config(path, StationConfig(skip_permissions=True))

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document == {"skipPermissions": True, "theme": "dark"}
    assert load_station_config(path).skip_permissions is True


def test_unreadable_station_config_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("skipPermissions: [", encoding="utf-8")

    assert load_station_config(path) == StationConfig()
    assert load_station_config(tmp_path / "missing.yaml") == StationConfig()


def test_runtime_config_is_cached_until_invalidated(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    runtime = RuntimeConfig(path)

    assert runtime.agent_flags() == []
    save_station_config(path, StationConfig(skip_permissions=True))
    assert runtime.agent_flags() == []

    runtime.invalidate()
    assert runtime.agent_flags() == [SKIP_PERMISSIONS_FLAG]


def test_configure_logging_writes_to_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "daemon.log"
    root = logging.getLogger()
    previous = list(root.handlers)

    try:
        configure_logging("INFO", log_file)
        logging.getLogger("workstation.test").info("hello from the daemon")
        for handler in root.handlers:
            handler.flush()
        assert "hello from the daemon" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = previous

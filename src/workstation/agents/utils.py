"""Environment helpers for agent subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "WORKSTATION_SESSION_ID",
}

SESSION_ENV_VAR = "WORKSTATION_SESSION_ID"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the parent environment minus interpreter and session leakage."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def session_environment(session_id: str, socket_path: str | None = None) -> dict[str, str]:
    """Variables a spawned session needs so its hooks report under the right id."""

    env = {SESSION_ENV_VAR: session_id}
    if socket_path:
        env["WORKSTATION_SOCKET_PATH"] = socket_path
    return env

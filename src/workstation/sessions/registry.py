"""In-memory table of active sessions."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..errors import DuplicateIDError, InvalidRequestError, NotFoundError
from .models import Session, SessionRole, utcnow

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"session_id"}


@dataclass(slots=True)
class Activity:
    """One tool-use observed for a session."""

    tool: str
    target: str
    timestamp: datetime

    def describe(self) -> str:
        return f"{self.tool} {self.target}".strip()


class SessionRegistry:
    """Active sessions keyed by session id.

    Mutations stay in memory; the checkpoint store is only written when a
    checkpoint save is requested explicitly.
    """

    def __init__(self, *, activity_window: int = 5) -> None:
        self._sessions: dict[str, Session] = {}
        self._activity: dict[str, deque[Activity]] = {}
        self._activity_window = activity_window

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def register(self, session: Session) -> Session:
        if session.session_id in self._sessions:
            raise DuplicateIDError(f"Session '{session.session_id}' is already registered")
        self._sessions[session.session_id] = session
        self._activity[session.session_id] = deque(maxlen=self._activity_window)
        logger.info(
            "Session registered",
            extra={
                "session_id": session.session_id,
                "repo": session.repo,
                "role": session.role.value,
                "external": session.external,
            },
        )
        return session

    def lookup(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise NotFoundError(f"Session '{session_id}' not found") from exc

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self) -> list[Session]:
        """All sessions, most recently active first."""

        return sorted(self._sessions.values(), key=lambda session: session.last_active, reverse=True)

    def workers(self) -> list[Session]:
        return [session for session in self.list() if session.role is SessionRole.WORKER]

    def for_repo(self, repo: str) -> list[Session]:
        return [session for session in self.list() if session.repo == repo]

    def update(self, session_id: str, **changes: Any) -> Session:
        """Merge ``changes`` into the session and bump ``last_active``."""

        session = self.lookup(session_id)
        for name, value in changes.items():
            if name in _IMMUTABLE_FIELDS or name not in Session.model_fields:
                raise InvalidRequestError(f"Cannot update session field '{name}'")
        merged = session.model_dump()
        merged.update(changes)
        merged["last_active"] = changes.get("last_active") or utcnow()
        validated = Session.model_validate(merged)
        for name in changes:
            setattr(session, name, getattr(validated, name))
        session.last_active = validated.last_active
        return session

    def replace(self, session: Session) -> Session:
        """Swap in a full snapshot for an already-registered session."""

        self.lookup(session.session_id)
        self._sessions[session.session_id] = session
        return session

    def touch(self, session_id: str, when: datetime | None = None) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch(when)

    def remove(self, session_id: str) -> Session:
        session = self.lookup(session_id)
        del self._sessions[session_id]
        self._activity.pop(session_id, None)
        logger.info("Session removed", extra={"session_id": session_id, "repo": session.repo})
        return session

    def record_activity(
        self, session_id: str, tool: str, target: str, when: datetime | None = None
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        timestamp = when or utcnow()
        self._activity[session_id].append(Activity(tool=tool, target=target, timestamp=timestamp))
        session.touch(timestamp)

    def recent_activity(self, session_id: str) -> list[Activity]:
        return list(self._activity.get(session_id, ()))

    def work_context(self, session_id: str) -> str | None:
        """Short summary of what a session has been doing lately."""

        activity = self.recent_activity(session_id)
        if activity:
            return "; ".join(item.describe() for item in activity[-3:])
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.current_step:
            return f"{session.task.name}: {session.current_step}"
        return session.task.name


__all__ = ["Activity", "SessionRegistry"]

"""Error taxonomy shared by the daemon, its clients and the hook producers."""

from __future__ import annotations


class WorkstationError(RuntimeError):
    """Base class for errors surfaced through the command surface."""

    code = "error"


class NotFoundError(WorkstationError):
    """Raised when a session, project or path does not exist."""

    code = "not_found"


class NoMatchError(WorkstationError):
    """Raised when a routing query resolves to neither a session nor a project."""

    code = "no_match"

    def __init__(self, message: str, suggestions: list[str] | None = None) -> None:
        super().__init__(message)
        self.suggestions = list(suggestions or [])


class DuplicateIDError(WorkstationError):
    """Raised when registering a session whose id is already taken."""

    code = "duplicate_id"


class UnreachableError(WorkstationError):
    """Raised when the daemon socket or a session process does not answer."""

    code = "unreachable"


class InvalidRequestError(WorkstationError):
    """Raised for malformed requests, invalid paths and illegal state changes."""

    code = "invalid"


class InvalidTransitionError(InvalidRequestError):
    """Raised when a step status change skips the in_progress state."""


class TimeoutExceededError(WorkstationError):
    """Raised when a bounded wait runs out."""

    code = "timeout"


__all__ = [
    "DuplicateIDError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "NoMatchError",
    "NotFoundError",
    "TimeoutExceededError",
    "UnreachableError",
    "WorkstationError",
]

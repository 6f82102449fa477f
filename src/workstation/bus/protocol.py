"""Wire messages exchanged over the daemon socket.

Every connection carries newline-delimited JSON. Inbound objects are
validated into a closed set of models keyed by ``type``; unknown extra keys
are ignored so hook scripts can evolve independently.
"""

from __future__ import annotations

import json
import time
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
)

from ..errors import InvalidRequestError

MAX_QUERY = 512
MAX_SESSION_ID = 128
MAX_REPO = 256
MAX_PATH = 1024
MAX_MESSAGE = 4096
MAX_TARGET = 256
MAX_LINE_BYTES = 1024 * 1024

Query = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_QUERY)]
SessionId = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_SESSION_ID)
]
RepoName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_REPO)]
PathText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_PATH)]
StepId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_SESSION_ID)]
MessageText = Annotated[str, StringConstraints(min_length=1, max_length=MAX_MESSAGE)]


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventContext(WireModel):
    project: str | None = None
    project_path: str | None = Field(default=None, alias="projectPath")
    task_id: str | None = Field(default=None, alias="taskId")


class ToolPayload(WireModel):
    tool: str
    target: str = Field(default="", max_length=MAX_TARGET)
    needs_approval: bool | None = Field(default=None, alias="needsApproval")
    tool_input: dict[str, Any] | None = Field(default=None, alias="toolInput")


class StepPayload(WireModel):
    step_id: StepId = Field(..., alias="stepId")
    name: str | None = None
    notes: str | None = None
    outcome: str | None = None
    verification: str | None = None
    reason: str | None = None
    unblock_action: str | None = Field(default=None, alias="unblockAction")
    files: list[str] = Field(default_factory=list)


class _Event(WireModel):
    session_id: str = Field(default="unknown", alias="sessionId")
    timestamp: int = Field(default_factory=now_ms)
    context: EventContext = Field(default_factory=EventContext)


class ToolUseEvent(_Event):
    type: Literal["tool_use"] = "tool_use"
    payload: ToolPayload


class SessionStartEvent(_Event):
    type: Literal["session_start"] = "session_start"
    payload: dict[str, Any] = Field(default_factory=dict)


class SessionEndEvent(_Event):
    type: Literal["session_end"] = "session_end"
    payload: dict[str, Any] = Field(default_factory=dict)


class StepStartedEvent(_Event):
    type: Literal["step_started"] = "step_started"
    payload: StepPayload


class StepCompletedEvent(_Event):
    type: Literal["step_completed"] = "step_completed"
    payload: StepPayload


class StepBlockedEvent(_Event):
    type: Literal["step_blocked"] = "step_blocked"
    payload: StepPayload


class PingCommand(WireModel):
    type: Literal["ping"] = "ping"


class SubscribeCommand(WireModel):
    type: Literal["subscribe"] = "subscribe"


class RouteCommand(WireModel):
    type: Literal["route"] = "route"
    query: Query
    message: MessageText


class DispatchCommand(WireModel):
    type: Literal["dispatch"] = "dispatch"
    target_session_id: SessionId = Field(..., alias="targetSessionId")
    message: MessageText


class ListWorkersCommand(WireModel):
    type: Literal["list_workers"] = "list_workers"


class CreateWorkerCommand(WireModel):
    type: Literal["create_worker"] = "create_worker"
    repo: RepoName
    repo_path: PathText = Field(..., alias="repoPath")
    task: RepoName
    task_id: SessionId | None = Field(default=None, alias="taskId")


class DiscoverProjectsCommand(WireModel):
    type: Literal["discover_projects"] = "discover_projects"
    path: PathText | None = None


class StepEdit(WireModel):
    """One step transition applied before a checkpoint is written."""

    action: Literal["start", "complete", "block"]
    step_id: StepId = Field(..., alias="stepId")
    name: str | None = None
    notes: str | None = None
    outcome: str | None = None
    reason: str | None = None


class CheckpointCommand(WireModel):
    """Explicit save request, sent by the CLI or by a plugin hook.

    ``steps`` are applied in order to the daemon's copy of the session (or
    to ``session`` when a full snapshot is supplied) before saving.
    """

    type: Literal["checkpoint"] = "checkpoint"
    session_id: SessionId = Field(..., alias="sessionId")
    session: dict[str, Any] | None = None
    steps: list[StepEdit] = Field(default_factory=list)


class CloseSessionCommand(WireModel):
    type: Literal["close_session"] = "close_session"
    session_id: SessionId = Field(..., alias="sessionId")


class ResumeSessionCommand(WireModel):
    type: Literal["resume_session"] = "resume_session"
    session_id: SessionId = Field(..., alias="sessionId")


Event = Union[
    ToolUseEvent,
    SessionStartEvent,
    SessionEndEvent,
    StepStartedEvent,
    StepCompletedEvent,
    StepBlockedEvent,
]

Command = Union[
    PingCommand,
    SubscribeCommand,
    RouteCommand,
    DispatchCommand,
    ListWorkersCommand,
    CreateWorkerCommand,
    DiscoverProjectsCommand,
    CheckpointCommand,
    CloseSessionCommand,
    ResumeSessionCommand,
]

Message = Annotated[Union[Event, Command], Field(discriminator="type")]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Message)

EVENT_TYPES = frozenset(
    model.model_fields["type"].default for model in Event.__args__  # type: ignore[attr-defined]
)
COMMAND_TYPES = frozenset(
    model.model_fields["type"].default for model in Command.__args__  # type: ignore[attr-defined]
)


def is_event(message: BaseModel) -> bool:
    return getattr(message, "type", None) in EVENT_TYPES


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid message"


def parse_message(line: str | bytes) -> Any:
    """Decode one JSON line into an event or command model."""

    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        document = json.loads(line)
    except json.JSONDecodeError as exc:
        raise InvalidRequestError("Invalid JSON") from exc
    if not isinstance(document, dict):
        raise InvalidRequestError("Invalid JSON")
    kind = document.get("type")
    if kind not in EVENT_TYPES and kind not in COMMAND_TYPES:
        raise InvalidRequestError(f"Unknown message type: {kind!r}")
    try:
        return _MESSAGE_ADAPTER.validate_python(document)
    except ValidationError as exc:
        raise InvalidRequestError(_describe(exc)) from exc


def encode(document: dict[str, Any] | BaseModel) -> bytes:
    if isinstance(document, WireModel):
        document = document.to_wire()
    elif isinstance(document, BaseModel):
        document = document.model_dump(mode="json", by_alias=True)
    return (json.dumps(document, separators=(",", ":")) + "\n").encode("utf-8")


def ok(**fields: Any) -> dict[str, Any]:
    return {"status": "ok", **fields}


def error(message: str, **fields: Any) -> dict[str, Any]:
    return {"status": "error", "message": message, **fields}


__all__ = [
    "COMMAND_TYPES",
    "CheckpointCommand",
    "CloseSessionCommand",
    "Command",
    "CreateWorkerCommand",
    "DiscoverProjectsCommand",
    "DispatchCommand",
    "EVENT_TYPES",
    "Event",
    "EventContext",
    "ListWorkersCommand",
    "MAX_LINE_BYTES",
    "MAX_TARGET",
    "Message",
    "PingCommand",
    "ResumeSessionCommand",
    "RouteCommand",
    "SessionEndEvent",
    "SessionStartEvent",
    "StepBlockedEvent",
    "StepCompletedEvent",
    "StepEdit",
    "StepPayload",
    "StepStartedEvent",
    "SubscribeCommand",
    "ToolPayload",
    "ToolUseEvent",
    "encode",
    "error",
    "is_event",
    "now_ms",
    "ok",
    "parse_message",
]

"""Command surface composed from the registry, router, supervisor and stores."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from . import __version__, router
from .agents.runner import AgentRunnerError
from .bus import protocol
from .bus.protocol import (
    CheckpointCommand,
    CloseSessionCommand,
    CreateWorkerCommand,
    DiscoverProjectsCommand,
    DispatchCommand,
    ListWorkersCommand,
    PingCommand,
    ResumeSessionCommand,
    RouteCommand,
    SessionEndEvent,
    SessionStartEvent,
    StepBlockedEvent,
    StepCompletedEvent,
    StepEdit,
    StepStartedEvent,
    ToolUseEvent,
    error,
    ok,
)
from .checkpoints import CheckpointStore
from .config import RuntimeConfig, WorkstationSettings
from .errors import (
    DuplicateIDError,
    InvalidRequestError,
    NoMatchError,
    NotFoundError,
    UnreachableError,
    WorkstationError,
)
from .projects import Project, ProjectIndex
from .sessions.models import Session, SessionRole, slugify
from .sessions.registry import SessionRegistry
from .sessions.supervisor import SessionSupervisor

logger = logging.getLogger(__name__)

Publisher = Callable[[Any], None]

_COMMAND_ADAPTER: TypeAdapter[Any] = TypeAdapter(protocol.Command)


def resolve_allowed_path(raw: str, allowed_roots: Iterable[Path]) -> Path:
    """Expand and resolve ``raw``; it must sit under one of ``allowed_roots``."""

    text = raw.strip()
    if not text:
        raise InvalidRequestError("Path must not be empty")
    if len(text) > protocol.MAX_PATH:
        raise InvalidRequestError("Path is too long")
    candidate = Path(text).expanduser().resolve()
    for root in allowed_roots:
        base = Path(root).expanduser().resolve()
        if candidate == base or base in candidate.parents:
            return candidate
    raise InvalidRequestError(f"Path {candidate} is outside the allowed roots")


def new_session_id(repo: str, taken: Callable[[str], bool]) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    base = slugify(repo).replace("_", "-") or "session"
    while True:
        candidate = f"{base}-{stamp}-{uuid4().hex[:6]}"
        if not taken(candidate):
            return candidate


def apply_step_edits(session: Session, edits: Iterable[StepEdit]) -> None:
    """Apply step transitions to ``session`` in order."""

    for edit in edits:
        if edit.action == "start":
            session.start_step(edit.step_id, name=edit.name, notes=edit.notes)
        elif edit.action == "complete":
            session.complete_step(edit.step_id, outcome=edit.outcome)
        else:
            session.block_step(edit.step_id, reason=edit.reason or "blocked")


def _resolved(path: str | Path) -> Path:
    return Path(path).expanduser().resolve()


def _serves(session: Session, project: Project) -> bool:
    """True when ``session`` already works on ``project``, by name or by path."""

    if session.repo == project.name:
        return True
    return bool(session.repo_path) and _resolved(session.repo_path) == _resolved(project.path)


class DispatchGateway:
    """Answers socket commands and applies hook events to the registry."""

    def __init__(
        self,
        *,
        settings: WorkstationSettings,
        registry: SessionRegistry,
        supervisor: SessionSupervisor,
        checkpoints: CheckpointStore,
        projects: ProjectIndex,
        runtime_config: RuntimeConfig,
        publish: Publisher | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._supervisor = supervisor
        self._checkpoints = checkpoints
        self._projects = projects
        self._runtime_config = runtime_config
        self._publish = publish or (lambda _event: None)
        self._handlers: dict[type, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            PingCommand: self._ping,
            RouteCommand: self._route,
            DispatchCommand: self._dispatch,
            ListWorkersCommand: self._list_workers,
            CreateWorkerCommand: self._create_worker,
            DiscoverProjectsCommand: self._discover_projects,
            CheckpointCommand: self._checkpoint,
            CloseSessionCommand: self._close_session,
            ResumeSessionCommand: self._resume_session,
        }
        supervisor.set_exit_callback(self._on_session_exit)

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def projects(self) -> ProjectIndex:
        return self._projects

    def attach_publisher(self, publish: Publisher) -> None:
        self._publish = publish

    async def handle(self, command: Any) -> dict[str, Any]:
        """Run one command; every failure becomes an error response."""

        handler = self._handlers.get(type(command))
        if handler is None:
            return error(f"Unsupported command: {getattr(command, 'type', None)!r}", code="invalid")
        try:
            return await handler(command)
        except NoMatchError as exc:
            return error(str(exc), code=exc.code, suggestions=exc.suggestions)
        except WorkstationError as exc:
            logger.info(
                "Command failed",
                extra={"type": command.type, "code": exc.code, "error": str(exc)},
            )
            return error(str(exc), code=exc.code)
        except AgentRunnerError as exc:
            logger.warning("Agent process error", extra={"type": command.type, "error": str(exc)})
            return error(str(exc), code="agent_unavailable")

    async def handle_document(self, document: dict[str, Any]) -> dict[str, Any]:
        """Validate a raw command mapping, then :meth:`handle` it."""

        try:
            command = _COMMAND_ADAPTER.validate_python(document)
        except ValidationError as exc:
            return error(f"Invalid request: {exc.error_count()} validation error(s)", code="invalid")
        return await self.handle(command)

    async def _ping(self, command: PingCommand) -> dict[str, Any]:
        return ok(type="pong", version=__version__, sessions=len(self._registry))

    async def _route(self, command: RouteCommand) -> dict[str, Any]:
        candidates = [session for session in self._registry.workers() if not session.external]
        decision = router.decide(command.query, candidates)
        session = decision.session
        exact_project = self._projects.resolve_exact(command.query)

        if session is not None and exact_project is not None and not _serves(session, exact_project):
            logger.info(
                "Discarding fuzzy session match for exact project",
                extra={"query": command.query, "matched": session.repo, "project": exact_project.name},
            )
            session = self._serving(exact_project, candidates)

        auto_created = False
        if session is None:
            project = exact_project or self._projects.resolve(command.query)
            session = self._serving(project, candidates)
            if session is None:
                session = await self._start_session(
                    repo=project.name, repo_path=Path(project.path), task=project.current_feature or project.name
                )
                auto_created = True
                ready = await self._supervisor.wait_ready(session.session_id, self._settings.ready_timeout)
                if not ready and not self._supervisor.is_managed(session.session_id):
                    raise UnreachableError(
                        f"Session '{session.session_id}' exited before it could take the message"
                    )

        await self._deliver(session, command.message)
        logger.info(
            "Routed message",
            extra={
                "query": command.query,
                "session_id": session.session_id,
                "tier": decision.tier,
                "auto_created": auto_created,
            },
        )
        response = ok(targetSessionId=session.session_id, repo=session.repo)
        if auto_created:
            response["autoCreated"] = True
        return response

    def _serving(self, project: Project, candidates: list[Session]) -> Session | None:
        serving = [session for session in candidates if _serves(session, project)]
        return router.match(project.name, serving) or router.most_recent(serving)

    async def _dispatch(self, command: DispatchCommand) -> dict[str, Any]:
        session = self._registry.lookup(command.target_session_id)
        await self._deliver(session, command.message)
        return ok(targetSessionId=session.session_id)

    async def _deliver(self, session: Session, message: str) -> None:
        if session.external:
            raise InvalidRequestError(
                f"Session '{session.session_id}' was not started by the daemon and cannot receive input"
            )
        await self._supervisor.write(session.session_id, message)

    async def _list_workers(self, command: ListWorkersCommand) -> dict[str, Any]:
        workers = [self.describe(session) for session in self._registry.list()]
        return ok(workers=workers, count=len(workers))

    def describe(self, session: Session) -> dict[str, Any]:
        return {
            "sessionId": session.session_id,
            "repo": session.repo,
            "repoPath": session.repo_path,
            "taskId": session.task.id,
            "task": session.task.name,
            "type": session.role.value,
            "isExternal": session.external,
            "lastActive": session.last_active.isoformat(),
            "currentStep": session.current_step,
            "workContext": self._registry.work_context(session.session_id),
        }

    async def _create_worker(self, command: CreateWorkerCommand) -> dict[str, Any]:
        repo_path = resolve_allowed_path(command.repo_path, self._settings.allowed_roots)
        if not repo_path.is_dir():
            raise NotFoundError(f"Repository path {repo_path} does not exist")
        session = await self._start_session(
            repo=command.repo, repo_path=repo_path, task=command.task, task_id=command.task_id
        )
        return ok(newSessionId=session.session_id, repo=session.repo, repoPath=session.repo_path)

    async def _start_session(
        self,
        *,
        repo: str,
        repo_path: Path,
        task: str,
        task_id: str | None = None,
        session_id: str | None = None,
        role: SessionRole = SessionRole.WORKER,
    ) -> Session:
        session = Session.new(
            session_id=session_id or new_session_id(repo, self._is_taken),
            repo=repo,
            repo_path=repo_path,
            task_name=task,
            task_id=task_id,
            role=role,
        )
        return await self._launch(session)

    async def _launch(self, session: Session) -> Session:
        self._runtime_config.invalidate()
        self._registry.register(session)
        try:
            await self._supervisor.spawn(session)
        except Exception:
            self._registry.remove(session.session_id)
            raise
        if session.repo not in self._projects and session.repo_path:
            self._projects.learn(session.repo, session.repo_path)
        self._projects.mark_active(session.repo)
        self._publish(
            SessionStartEvent(
                sessionId=session.session_id,
                context={"project": session.repo, "projectPath": session.repo_path, "taskId": session.task.id},
            )
        )
        return session

    def _is_taken(self, session_id: str) -> bool:
        return session_id in self._registry or self._checkpoints.exists(session_id)

    async def _discover_projects(self, command: DiscoverProjectsCommand) -> dict[str, Any]:
        if command.path:
            root = resolve_allowed_path(command.path, self._settings.allowed_roots)
            if not root.is_dir():
                raise NotFoundError(f"Directory {root} does not exist")
            roots = [root]
        else:
            roots = [path for path in self._settings.scan_paths if path.is_dir()]
        result = self._projects.discover(roots, max_depth=self._settings.discovery_max_depth)
        return ok(
            discovered=[{"name": project.name, "path": project.path} for project in result.discovered],
            total=result.total,
            newCount=result.new_count,
        )

    async def _checkpoint(self, command: CheckpointCommand) -> dict[str, Any]:
        live = self._registry.get(command.session_id)
        if command.session is not None:
            try:
                session = Session.model_validate({**command.session, "session_id": command.session_id})
            except ValidationError as exc:
                raise InvalidRequestError(f"Invalid session snapshot: {exc.error_count()} error(s)") from exc
            if live is not None:
                session.role = live.role
                session.external = live.external
        elif live is not None:
            # Edits apply to a copy; the live session changes only if all of them succeed.
            session = live.model_copy(deep=True) if command.steps else live
        elif command.steps:
            session = self._checkpoints.load(command.session_id)
        else:
            raise NotFoundError(f"Session '{command.session_id}' not found")

        apply_step_edits(session, command.steps)
        if live is not None and session is not live:
            self._registry.replace(session)
        path = await self._checkpoints.save_async(session)
        return ok(sessionId=session.session_id, path=str(path), currentStep=session.current_step)

    async def _close_session(self, command: CloseSessionCommand) -> dict[str, Any]:
        session = self._registry.lookup(command.session_id)
        if self._supervisor.is_managed(session.session_id):
            returncode = await self._supervisor.close(session.session_id)
            return ok(sessionId=session.session_id, closed=True, returncode=returncode)
        self._registry.remove(session.session_id)
        self._after_session_gone(session)
        return ok(sessionId=session.session_id, closed=True)

    async def _resume_session(self, command: ResumeSessionCommand) -> dict[str, Any]:
        if command.session_id in self._registry:
            raise DuplicateIDError(f"Session '{command.session_id}' is already running")
        session = self._checkpoints.recover(command.session_id)
        repo_path = resolve_allowed_path(session.repo_path, self._settings.allowed_roots)
        if not repo_path.is_dir():
            raise NotFoundError(f"Repository path {repo_path} no longer exists")
        session.external = False
        session.touch()
        await self._launch(session)
        return ok(sessionId=session.session_id, resumed=True, currentStep=session.current_step)

    def _on_session_exit(self, session: Session, returncode: int) -> None:
        self._after_session_gone(session, returncode)

    def _after_session_gone(self, session: Session, returncode: int | None = None) -> None:
        if not self._registry.for_repo(session.repo):
            self._projects.mark_idle(session.repo)
        payload: dict[str, Any] = {}
        if returncode is not None:
            payload["returncode"] = returncode
        self._publish(
            SessionEndEvent(
                sessionId=session.session_id,
                context={"project": session.repo, "projectPath": session.repo_path},
                payload=payload,
            )
        )

    def apply_event(self, event: Any) -> None:
        """Fold a hook event into the registry. Unknown sessions are ignored."""

        try:
            self._apply(event)
        except ValidationError as exc:
            raise InvalidRequestError(
                f"Event {event.type} cannot be applied: {exc.error_count()} validation error(s)"
            ) from exc

    def _apply(self, event: Any) -> None:
        if isinstance(event, ToolUseEvent):
            self._registry.record_activity(event.session_id, event.payload.tool, event.payload.target)
        elif isinstance(event, SessionStartEvent):
            self._register_external(event)
        elif isinstance(event, SessionEndEvent):
            session = self._registry.get(event.session_id)
            if session is not None and session.external:
                self._registry.remove(session.session_id)
                if not self._registry.for_repo(session.repo):
                    self._projects.mark_idle(session.repo)
        elif isinstance(event, (StepStartedEvent, StepCompletedEvent, StepBlockedEvent)):
            self._apply_step_event(event)

    def _register_external(self, event: SessionStartEvent) -> None:
        if event.session_id in self._registry:
            self._registry.touch(event.session_id)
            return
        if event.session_id == "unknown":
            raise InvalidRequestError("session_start requires a sessionId")
        context = event.context
        repo_path = context.project_path or ""
        repo = context.project or (Path(repo_path).name if repo_path else "unknown")
        task = context.task_id or str(event.payload.get("task") or repo)
        session = Session.new(
            session_id=event.session_id,
            repo=repo,
            repo_path=repo_path,
            task_name=task,
            task_id=context.task_id,
            external=True,
        )
        self._registry.register(session)
        self._projects.mark_active(repo)

    def _apply_step_event(self, event: Any) -> None:
        session = self._registry.get(event.session_id)
        if session is None:
            return
        payload = event.payload
        if isinstance(event, StepStartedEvent):
            session.start_step(
                payload.step_id, name=payload.name, notes=payload.notes, files_touched=payload.files
            )
        elif isinstance(event, StepCompletedEvent):
            session.complete_step(
                payload.step_id,
                outcome=payload.outcome,
                files_changed=payload.files or None,
                verification=payload.verification,
            )
        else:
            session.block_step(
                payload.step_id,
                reason=payload.reason or "blocked",
                unblock_action=payload.unblock_action,
            )

    def recoverable(self) -> list[dict[str, Any]]:
        """Checkpointed sessions that are not currently running."""

        return [row for row in self._checkpoints.summaries() if row["session_id"] not in self._registry]


__all__ = ["DispatchGateway", "apply_step_edits", "new_session_id", "resolve_allowed_path"]

"""Session, task and step models tracked by the registry and checkpoints."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class SessionRole(str, Enum):
    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"


class Step(BaseModel):
    """One unit of work inside a task."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Stable identifier referenced by depends_on.")
    name: str = Field(..., description="Human-friendly step title.")
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_since: datetime | None = None
    outcome: str | None = None
    notes: str | None = None
    blocked_reason: str | None = None
    unblock_action: str | None = None
    files_changed: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    verification: str | None = None
    subtasks: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Step id must not be empty")
        return normalized


class Task(BaseModel):
    """The single task owned by a session."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    description: str | None = None
    archive_path: str = ""
    started_at: datetime = Field(default_factory=utcnow)
    estimated_completion: str | None = None
    repos_involved: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class DirtyFile(BaseModel):
    path: str
    status: str


class GitState(BaseModel):
    """Snapshot of the working tree taken at checkpoint time."""

    branch: str
    last_commit: str
    last_commit_message: str | None = None
    dirty_files: list[DirtyFile] = Field(default_factory=list)
    staged_files: list[str] = Field(default_factory=list)


class Session(BaseModel):
    """A coding-agent session bound to one repository and one task."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    repo: str
    repo_path: str
    working_dir: str
    created_at: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)
    task: Task
    steps: list[Step] = Field(default_factory=list)
    current_step: str | None = None
    next_step: str | None = None
    git_state: GitState | None = None
    role: SessionRole = SessionRole.WORKER
    external: bool = False

    @field_validator("session_id")
    @classmethod
    def _normalize_session_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Session id must not be empty")
        return normalized

    @classmethod
    def new(
        cls,
        *,
        session_id: str,
        repo: str,
        repo_path: Path | str,
        task_name: str,
        role: SessionRole = SessionRole.WORKER,
        task_id: str | None = None,
        external: bool = False,
    ) -> "Session":
        now = utcnow()
        task_key = task_id or slugify(task_name) or session_id
        return cls(
            session_id=session_id,
            repo=repo,
            repo_path=str(repo_path),
            working_dir=str(repo_path),
            created_at=now,
            last_active=now,
            task=Task(
                id=task_key,
                name=task_name,
                archive_path=f"archive/{task_key}/",
                started_at=now,
                repos_involved=[repo],
            ),
            role=role,
            external=external,
        )

    def touch(self, when: datetime | None = None) -> None:
        self.last_active = when or utcnow()

    def find_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError(f"Step '{step_id}' not found in session {self.session_id}")

    def in_progress_steps(self) -> list[Step]:
        return [step for step in self.steps if step.status is StepStatus.IN_PROGRESS]

    def current_status(self) -> StepStatus:
        if self.current_step:
            for step in self.steps:
                if step.id == self.current_step:
                    return step.status
        return StepStatus.PENDING

    def start_step(
        self,
        step_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
        files_touched: list[str] | None = None,
    ) -> Step:
        """Move a step to in_progress, creating it when first seen."""

        try:
            step = self.find_step(step_id)
        except NotFoundError:
            step = Step(id=step_id, name=name or step_id)
            self.steps.append(step)

        if step.status not in {StepStatus.PENDING, StepStatus.BLOCKED}:
            raise InvalidTransitionError(
                f"Cannot start step '{step_id}' from status {step.status.value}"
            )

        for other in self.in_progress_steps():
            if other.id != step.id:
                logger.warning(
                    "Demoting concurrent in-progress step",
                    extra={"session_id": self.session_id, "step_id": other.id},
                )
                other.status = StepStatus.PENDING

        now = utcnow()
        if step.status is StepStatus.BLOCKED:
            step.blocked_reason = None
            step.blocked_since = None
            step.unblock_action = None
        step.status = StepStatus.IN_PROGRESS
        step.started_at = step.started_at or now
        if notes is not None:
            step.notes = notes
        if files_touched:
            step.files_touched = list(files_touched)
        self.current_step = step.id
        self.next_step = self._first_ready_step(exclude=step.id)
        self.touch(now)
        return step

    def complete_step(
        self,
        step_id: str,
        *,
        outcome: str | None = None,
        files_changed: list[str] | None = None,
        verification: str | None = None,
    ) -> Step:
        step = self.find_step(step_id)
        if step.status is not StepStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Cannot complete step '{step_id}' from status {step.status.value}"
            )
        now = utcnow()
        step.status = StepStatus.COMPLETED
        step.completed_at = now
        step.outcome = outcome
        if files_changed is not None:
            step.files_changed = list(files_changed)
        step.verification = verification
        self.next_step = self._first_ready_step()
        self.touch(now)
        return step

    def block_step(self, step_id: str, *, reason: str, unblock_action: str | None = None) -> Step:
        step = self.find_step(step_id)
        if step.status is not StepStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Cannot block step '{step_id}' from status {step.status.value}"
            )
        now = utcnow()
        step.status = StepStatus.BLOCKED
        step.blocked_reason = reason
        step.blocked_since = now
        step.unblock_action = unblock_action
        self.touch(now)
        return step

    def force_status(self, step_id: str, status: StepStatus) -> Step:
        """Recovery override that bypasses the transition rules."""

        step = self.find_step(step_id)
        logger.warning(
            "Forcing step status",
            extra={
                "session_id": self.session_id,
                "step_id": step_id,
                "from": step.status.value,
                "to": status.value,
            },
        )
        step.status = status
        return step

    def normalize_in_progress(self) -> list[str]:
        """Keep a single in-progress step; return the ids that were demoted."""

        active = self.in_progress_steps()
        if len(active) <= 1:
            return []
        keeper = next((step for step in active if step.id == self.current_step), None)
        if keeper is None:
            epoch = datetime.min.replace(tzinfo=timezone.utc)
            keeper = max(active, key=lambda step: step.started_at or epoch)
        demoted: list[str] = []
        for step in active:
            if step is keeper:
                continue
            self.force_status(step.id, StepStatus.PENDING)
            demoted.append(step.id)
        self.current_step = keeper.id
        return demoted

    def _first_ready_step(self, exclude: str | None = None) -> str | None:
        completed = {step.id for step in self.steps if step.status is StepStatus.COMPLETED}
        for step in self.steps:
            if step.id == exclude or step.status is not StepStatus.PENDING:
                continue
            if all(dep in completed for dep in step.depends_on):
                return step.id
        return None

    def identifiers(self) -> list[str]:
        """Task and step identifiers used for routing."""

        values = [self.task.id, self.task.name, *self.task.tags]
        values.extend(step.id for step in self.steps)
        return [value for value in values if value]

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "repo": self.repo,
            "task": self.task.name,
            "current_step": self.current_step,
            "status": self.current_status().value,
            "last_active": self.last_active.isoformat(),
        }


def slugify(value: str) -> str:
    chars = [ch.lower() if ch.isalnum() else "_" for ch in value.strip()]
    return "_".join(part for part in "".join(chars).split("_") if part)


__all__ = [
    "DirtyFile",
    "GitState",
    "Session",
    "SessionRole",
    "Step",
    "StepStatus",
    "Task",
    "slugify",
    "utcnow",
]

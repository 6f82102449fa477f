"""YAML-backed checkpoint persistence, one file per session."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from ..errors import InvalidRequestError, NotFoundError, WorkstationError
from ..fsutil import atomic_write_text
from ..sessions.models import Session

logger = logging.getLogger(__name__)


class CheckpointLoadError(WorkstationError):
    """Raised when a checkpoint file exists but cannot be parsed."""

    code = "checkpoint_corrupt"


def _validate_session_id(session_id: str) -> str:
    normalized = session_id.strip()
    if not normalized or "/" in normalized or "\\" in normalized or normalized.startswith("."):
        raise InvalidRequestError(f"Invalid session id for checkpoint: {session_id!r}")
    return normalized


class CheckpointStore:
    """Durable per-session task/step state stored as YAML documents.

    Writes only happen on an explicit :meth:`save`. The daemon goes through
    :meth:`save_async`, which serializes writers for the same session; a CLI
    invocation with no daemon running may call :meth:`save` directly.
    """

    def __init__(
        self,
        directory: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{_validate_session_id(session_id)}.yaml"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def save(self, session: Session) -> Path:
        path = self.path_for(session.session_id)
        document = session.model_dump(mode="json")
        atomic_write_text(path, yaml.safe_dump(document, sort_keys=False, allow_unicode=True))
        logger.info(
            "Checkpoint saved",
            extra={"session_id": session.session_id, "path": str(path)},
        )
        return path

    async def save_async(self, session: Session) -> Path:
        lock = self._locks.setdefault(session.session_id, asyncio.Lock())
        snapshot = session.model_copy(deep=True)
        async with lock:
            return await asyncio.to_thread(self.save, snapshot)

    def load(self, session_id: str) -> Session:
        path = self.path_for(session_id)
        if not path.exists():
            raise NotFoundError(f"No checkpoint for session '{session_id}'")
        return self._read(path)

    def _read(self, path: Path) -> Session:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise CheckpointLoadError(f"Failed to parse checkpoint {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise CheckpointLoadError(f"Checkpoint {path} does not contain a mapping")
        try:
            return Session.model_validate(document)
        except ValidationError as exc:
            raise CheckpointLoadError(f"Checkpoint validation error in {path}: {exc}") from exc

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        self._locks.pop(session_id, None)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Checkpoint deleted", extra={"session_id": session_id})
        return True

    def list(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(path.stem for path in self._directory.glob("*.yaml"))

    def load_all(self) -> list[Session]:
        """Load every readable checkpoint; corrupt files are logged and skipped."""

        sessions: list[Session] = []
        for session_id in self.list():
            try:
                sessions.append(self.load(session_id))
            except CheckpointLoadError as exc:
                logger.warning(
                    "Skipping unreadable checkpoint",
                    extra={"session_id": session_id, "error": str(exc)},
                )
        return sessions

    def summaries(self) -> list[dict[str, Any]]:
        rows = [session.summary() for session in self.load_all()]
        rows.sort(key=lambda row: row["last_active"], reverse=True)
        return rows

    def stale(self, max_age_days: int = 30) -> list[str]:
        """Ids of checkpoints whose session was last active before the cutoff."""

        cutoff = self._clock() - timedelta(days=max_age_days)
        found: list[str] = []
        for session_id in self.list():
            path = self.path_for(session_id)
            try:
                last_active = self._read(path).last_active
            except CheckpointLoadError:
                last_active = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if last_active < cutoff:
                found.append(session_id)
        return found

    def cleanup_stale(self, max_age_days: int = 30) -> list[str]:
        removed: list[str] = []
        for session_id in self.stale(max_age_days):
            self.path_for(session_id).unlink(missing_ok=True)
            self._locks.pop(session_id, None)
            removed.append(session_id)
        if removed:
            logger.info(
                "Removed stale checkpoints",
                extra={"count": len(removed), "max_age_days": max_age_days},
            )
        return removed

    def recover(self, session_id: str) -> Session:
        """Load a checkpoint after a crash and repair the single in-progress step rule."""

        session = self.load(session_id)
        demoted = session.normalize_in_progress()
        if demoted:
            logger.warning(
                "Recovered checkpoint had several in-progress steps",
                extra={
                    "session_id": session_id,
                    "kept": session.current_step,
                    "demoted": demoted,
                },
            )
        return session


__all__ = ["CheckpointLoadError", "CheckpointStore"]

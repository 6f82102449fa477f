"""Persisted project index, repository discovery and name resolution."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..errors import NoMatchError, NotFoundError
from ..fsutil import atomic_write_text
from .models import Project, ProjectStatus

logger = logging.getLogger(__name__)

REPO_MARKERS = (".git", "CLAUDE.md")
SKIPPED_DIRS = frozenset({"node_modules", "archive"})
MAX_SUGGESTIONS = 5


def normalize_name(value: str) -> str:
    return re.sub(r"[-_]", "", value.strip().casefold())


def is_repository(path: Path) -> bool:
    return any((path / marker).exists() for marker in REPO_MARKERS)


def scan_repositories(root: Path, max_depth: int = 3) -> list[Path]:
    """Return repository roots at or below ``root``.

    A root that is itself a repository yields just that root. Otherwise
    directories are walked up to ``max_depth`` levels, skipping hidden
    directories, ``node_modules`` and ``archive``.
    """

    root = Path(root)
    if not root.is_dir():
        return []
    if is_repository(root):
        return [root]

    found: list[Path] = []

    def _walk(directory: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            entries = sorted(directory.iterdir(), key=lambda item: item.name)
        except OSError as exc:
            logger.debug("Failed to scan directory", extra={"path": str(directory), "error": str(exc)})
            return
        for entry in entries:
            if entry.name.startswith(".") or entry.name in SKIPPED_DIRS:
                continue
            if entry.is_symlink() or not entry.is_dir():
                continue
            if is_repository(entry):
                found.append(entry)
            _walk(entry, depth + 1)

    _walk(root, 0)
    return found


@dataclass(slots=True)
class DiscoveryResult:
    discovered: list[Project] = field(default_factory=list)
    total: int = 0

    @property
    def new_count(self) -> int:
        return len(self.discovered)


class ProjectIndex:
    """Mapping of project name to :class:`Project`, stored in ``projects.yaml``."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._projects: dict[str, Project] = {}
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._projects)

    def __contains__(self, name: object) -> bool:
        return name in self._projects

    def reload(self) -> None:
        self._projects = {}
        if not self._path.exists():
            return
        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to read project index", extra={"path": str(self._path), "error": str(exc)})
            return
        entries = document.get("projects") if isinstance(document, dict) else None
        if not isinstance(entries, dict):
            return
        for name, entry in entries.items():
            if not isinstance(entry, dict):
                continue
            try:
                project = Project.model_validate({**entry, "name": str(name)})
            except ValidationError as exc:
                logger.warning("Skipping invalid project entry", extra={"project": name, "error": str(exc)})
                continue
            self._projects[project.name] = project

    def save(self) -> None:
        entries = {}
        for name, project in sorted(self._projects.items()):
            data = project.model_dump(mode="json", exclude={"name"})
            entries[name] = data
        atomic_write_text(self._path, yaml.safe_dump({"projects": entries}, sort_keys=False))

    def all(self) -> list[Project]:
        return [self._projects[name] for name in sorted(self._projects)]

    def get(self, name: str) -> Project:
        try:
            return self._projects[name]
        except KeyError as exc:
            raise NotFoundError(f"Project '{name}' not found") from exc

    def find_by_path(self, path: Path | str) -> Project | None:
        target = Path(path).expanduser().resolve()
        for project in self._projects.values():
            if Path(project.path).expanduser().resolve() == target:
                return project
        return None

    def learn(self, name: str, path: Path | str, *, persist: bool = True) -> Project | None:
        """Add a project unless its path or name is already indexed."""

        resolved = Path(path).expanduser().resolve()
        if self.find_by_path(resolved) is not None:
            return None
        if name in self._projects:
            qualified = f"{resolved.parent.name}-{name}"
            if not resolved.parent.name or qualified in self._projects:
                logger.info("Project name already indexed", extra={"project": name, "path": str(resolved)})
                return None
            name = qualified
        project = Project(name=name, path=str(resolved))
        self._projects[name] = project
        if persist:
            self.save()
        logger.info("Project learned", extra={"project": name, "path": str(resolved)})
        return project

    def discover(self, roots: Path | Iterable[Path], *, max_depth: int = 3) -> DiscoveryResult:
        """Scan ``roots`` and merge new repositories; repeated calls add nothing."""

        if isinstance(roots, (str, Path)):
            roots = [Path(roots)]
        result = DiscoveryResult()
        for root in roots:
            for repo_path in scan_repositories(Path(root).expanduser(), max_depth):
                project = self.learn(repo_path.name, repo_path, persist=False)
                if project is not None:
                    result.discovered.append(project)
        if result.discovered:
            self.save()
        result.total = len(self._projects)
        logger.info(
            "Project discovery finished",
            extra={"new_count": result.new_count, "total": result.total},
        )
        return result

    def resolve_exact(self, query: str) -> Project | None:
        wanted = normalize_name(query)
        if not wanted:
            return None
        for project in self.all():
            if any(normalize_name(name) == wanted for name in project.names()):
                return project
        return None

    def resolve(self, query: str) -> Project:
        """Resolve free text to one project or raise :class:`NoMatchError`."""

        exact = self.resolve_exact(query)
        if exact is not None:
            return exact

        wanted = normalize_name(query)
        if not wanted:
            raise NoMatchError("Empty project query")
        candidates = [
            project
            for project in self.all()
            if any(
                wanted in normalize_name(name) or normalize_name(name) in wanted
                for name in project.names()
                if normalize_name(name)
            )
        ]
        if len(candidates) == 1:
            return candidates[0]
        if candidates:
            lowered = query.strip().casefold()
            for project in candidates:
                name = normalize_name(project.name)
                if name.endswith(wanted) or lowered in re.split(r"[-_]", project.name.casefold()):
                    return project
            names = [project.name for project in candidates]
            raise NoMatchError(
                f"Multiple projects match '{query}': {', '.join(names)}. Please be more specific.",
                suggestions=names,
            )

        suggestions = self.suggest(wanted)
        hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
        raise NoMatchError(f"No session or project matches '{query}'.{hint}", suggestions=suggestions)

    def suggest(self, wanted: str) -> list[str]:
        scored: list[tuple[int, str]] = []
        for project in self.all():
            name = normalize_name(project.name)
            score = 0
            if wanted[:3] and wanted[:3] in name:
                score += 20
            if name[:3] and name[:3] in wanted:
                score += 15
            if name and wanted and name[0] == wanted[0]:
                score += 10
            if (Path(project.path) / "CLAUDE.md").exists():
                score += 5
            if score:
                scored.append((score, project.name))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [name for _, name in scored[:MAX_SUGGESTIONS]]

    def set_status(self, name: str, status: ProjectStatus, *, feature: str | None = None) -> Project:
        project = self.get(name)
        project.status = status
        if feature is not None:
            project.current_feature = feature
        project.last_updated = datetime.now(timezone.utc)
        self.save()
        return project

    def mark_active(self, name: str, *, feature: str | None = None) -> Project | None:
        if name not in self._projects:
            return None
        return self.set_status(name, ProjectStatus.ACTIVE, feature=feature)

    def mark_idle(self, name: str) -> Project | None:
        project = self._projects.get(name)
        if project is None or project.status is ProjectStatus.PAUSED:
            return project
        return self.set_status(name, ProjectStatus.IDLE)


__all__ = [
    "DiscoveryResult",
    "ProjectIndex",
    "REPO_MARKERS",
    "is_repository",
    "normalize_name",
    "scan_repositories",
]

"""Project index data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    PAUSED = "paused"


class Project(BaseModel):
    """A repository known to the daemon, addressable by name or alias."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., description="Routing name, usually the directory name.")
    path: str = Field(..., description="Absolute path of the repository root.")
    status: ProjectStatus = ProjectStatus.IDLE
    current_feature: str | None = None
    aliases: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Project name must not be empty")
        return normalized

    @field_validator("aliases")
    @classmethod
    def _dedupe_aliases(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for alias in value:
            alias = alias.strip()
            if alias and alias not in seen:
                seen.append(alias)
        return seen

    def names(self) -> list[str]:
        return [self.name, *self.aliases]


__all__ = ["Project", "ProjectStatus"]

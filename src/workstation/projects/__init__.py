"""Project index and repository discovery."""

from .index import DiscoveryResult, ProjectIndex, scan_repositories
from .models import Project, ProjectStatus

__all__ = ["DiscoveryResult", "Project", "ProjectIndex", "ProjectStatus", "scan_repositories"]

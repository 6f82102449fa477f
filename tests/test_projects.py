from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from workstation.errors import NoMatchError, NotFoundError
from workstation.projects import ProjectIndex, ProjectStatus, scan_repositories


def _repo(root: Path, *parts: str, marker: str = ".git") -> Path:
    path = root.joinpath(*parts)
    path.mkdir(parents=True, exist_ok=True)
    if marker == ".git":
        (path / ".git").mkdir(exist_ok=True)
    else:
        (path / marker).write_text("# notes\n", encoding="utf-8")
    return path


def test_scan_finds_nested_repos_and_skips_ignored_dirs(tmp_path: Path) -> None:
    _repo(tmp_path, "api")
    _repo(tmp_path, "clients", "acme", "portal", marker="CLAUDE.md")
    _repo(tmp_path, "node_modules", "left-pad")
    _repo(tmp_path, "archive", "old-app")
    _repo(tmp_path, ".cache", "hidden")
    _repo(tmp_path, "a", "b", "c", "d", "too-deep")

    names = sorted(path.name for path in scan_repositories(tmp_path, max_depth=3))

    assert names == ["api", "portal"]


def test_scan_of_a_repo_returns_only_that_repo(tmp_path: Path) -> None:
    repo = _repo(tmp_path, "mono")
    _repo(repo, "packages", "inner")

    assert scan_repositories(repo) == [repo]


def test_discover_is_idempotent(tmp_path: Path) -> None:
    workspace = tmp_path / "work"
    _repo(workspace, "api")
    _repo(workspace, "web")
    index = ProjectIndex(tmp_path / "projects.yaml")

    first = index.discover(workspace)
    second = index.discover(workspace)

    assert sorted(project.name for project in first.discovered) == ["api", "web"]
    assert first.new_count == 2
    assert second.new_count == 0
    assert second.total == 2
    reloaded = ProjectIndex(tmp_path / "projects.yaml")
    assert sorted(project.name for project in reloaded.all()) == ["api", "web"]


def test_same_name_in_different_parents_gets_qualified(tmp_path: Path) -> None:
    _repo(tmp_path, "acme", "portal")
    _repo(tmp_path, "globex", "portal")
    index = ProjectIndex(tmp_path / "projects.yaml")

    result = index.discover(tmp_path)

    assert sorted(project.name for project in result.discovered) == ["globex-portal", "portal"]


def test_index_file_layout(tmp_path: Path) -> None:
    _repo(tmp_path, "ws", "api")
    index = ProjectIndex(tmp_path / "projects.yaml")
    index.discover(tmp_path / "ws")

    document = yaml.safe_load((tmp_path / "projects.yaml").read_text(encoding="utf-8"))

    entry = document["projects"]["api"]
    assert entry["path"] == str((tmp_path / "ws" / "api").resolve())
    assert entry["status"] == "idle"
    assert entry["aliases"] == []
    assert "last_updated" in entry


def test_resolve_exact_alias_and_substring(tmp_path: Path) -> None:
    index = ProjectIndex(tmp_path / "projects.yaml")
    index.learn("customer_portal", _repo(tmp_path, "customer_portal"))
    index.learn("billing-api", _repo(tmp_path, "billing-api"))
    index.get("billing-api").aliases.append("payments")

    assert index.resolve("customer-portal").name == "customer_portal"
    assert index.resolve("payments").name == "billing-api"
    assert index.resolve("billing").name == "billing-api"
    assert index.resolve_exact("billing") is None


def test_resolve_prefers_word_boundary_among_candidates(tmp_path: Path) -> None:
    index = ProjectIndex(tmp_path / "projects.yaml")
    index.learn("apple-store", _repo(tmp_path, "apple-store"))
    index.learn("web-app", _repo(tmp_path, "web-app"))
    index.learn("api-gateway", _repo(tmp_path, "api-gateway"))
    index.learn("gateway-admin", _repo(tmp_path, "gateway-admin"))

    assert index.resolve("app").name == "web-app"
    with pytest.raises(NoMatchError) as excinfo:
        index.resolve("gate")
    assert sorted(excinfo.value.suggestions) == ["api-gateway", "gateway-admin"]


def test_resolve_no_match_offers_suggestions(tmp_path: Path) -> None:
    index = ProjectIndex(tmp_path / "projects.yaml")
    index.learn("inventory", _repo(tmp_path, "inventory"))

    with pytest.raises(NoMatchError) as excinfo:
        index.resolve("invoices")

    assert excinfo.value.suggestions == ["inventory"]


def test_status_lifecycle_respects_paused(tmp_path: Path) -> None:
    index = ProjectIndex(tmp_path / "projects.yaml")
    index.learn("api", _repo(tmp_path, "api"))

    assert index.mark_active("api", feature="checkout").status is ProjectStatus.ACTIVE
    assert index.get("api").current_feature == "checkout"
    assert index.mark_idle("api").status is ProjectStatus.IDLE

    index.set_status("api", ProjectStatus.PAUSED)
    assert index.mark_idle("api").status is ProjectStatus.PAUSED
    assert index.mark_active("unknown") is None
    with pytest.raises(NotFoundError):
        index.get("unknown")

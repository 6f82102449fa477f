"""Fuzzy session routing.

Resolution walks ordered tiers and the first tier with any hit decides:

1. query equals the repo name
2. query names the session's task or one of its steps
3. repo name contains the query
4. query contains the repo name
5. repo path contains the query

Ties inside the winning tier are narrowed by the other tiers in the same
order (a narrowing step that would leave nothing is skipped), then by the
most recent ``last_active`` and finally by ``session_id``. Orchestrator
sessions are never candidates. The functions here have no side effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from .sessions.models import Session, SessionRole

MIN_PARTIAL_LENGTH = 3

_SEPARATORS = re.compile(r"[\s_\-./]+")


class Tier:
    EXACT_REPO = 1
    TASK = 2
    REPO_CONTAINS_QUERY = 3
    QUERY_CONTAINS_REPO = 4
    PATH = 5
    RECENCY = 6


@dataclass(slots=True)
class RouteDecision:
    """Outcome of a routing pass, kept for logging and diagnostics."""

    query: str
    session: Session | None
    tier: int | None = None
    tied: list[str] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.session is not None


def normalize(value: str) -> str:
    return value.strip().casefold()


def _squash(value: str) -> str:
    return _SEPARATORS.sub("-", normalize(value)).strip("-")


def _exact_repo(query: str, session: Session) -> bool:
    return normalize(session.repo) == query


def _task_strict(query: str, session: Session) -> bool:
    squashed = _squash(query)
    for ident in session.identifiers():
        candidate = _squash(ident)
        if not candidate:
            continue
        if candidate == squashed:
            return True
        if len(squashed) >= MIN_PARTIAL_LENGTH and squashed in candidate:
            return True
    return False


def _task_loose(query: str, session: Session) -> bool:
    if _task_strict(query, session):
        return True
    squashed = _squash(query)
    return any(
        len(candidate) >= MIN_PARTIAL_LENGTH and candidate in squashed
        for candidate in (_squash(ident) for ident in session.identifiers())
    )


def _repo_contains_query(query: str, session: Session) -> bool:
    return bool(query) and query in normalize(session.repo)


def _query_contains_repo(query: str, session: Session) -> bool:
    repo = normalize(session.repo)
    return bool(repo) and repo in query


def _path_contains_query(query: str, session: Session) -> bool:
    if len(query) < MIN_PARTIAL_LENGTH:
        return False
    return query in normalize(session.repo_path) or query in normalize(session.working_dir)


_Predicate = Callable[[str, Session], bool]

_TIERS: tuple[tuple[int, _Predicate], ...] = (
    (Tier.EXACT_REPO, _exact_repo),
    (Tier.TASK, _task_strict),
    (Tier.REPO_CONTAINS_QUERY, _repo_contains_query),
    (Tier.QUERY_CONTAINS_REPO, _query_contains_repo),
    (Tier.PATH, _path_contains_query),
)

_NARROWING: tuple[tuple[int, _Predicate], ...] = (
    (Tier.EXACT_REPO, _exact_repo),
    (Tier.TASK, _task_loose),
    (Tier.REPO_CONTAINS_QUERY, _repo_contains_query),
    (Tier.QUERY_CONTAINS_REPO, _query_contains_repo),
    (Tier.PATH, _path_contains_query),
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _by_recency(sessions: Iterable[Session]) -> list[Session]:
    ordered = sorted(sessions, key=lambda session: session.session_id)
    return sorted(ordered, key=lambda session: session.last_active or _EPOCH, reverse=True)


def routable(candidates: Iterable[Session]) -> list[Session]:
    return [session for session in candidates if session.role is SessionRole.WORKER]


def most_recent(candidates: Iterable[Session]) -> Session | None:
    ranked = _by_recency(candidates)
    return ranked[0] if ranked else None


def decide(query: str, candidates: Sequence[Session]) -> RouteDecision:
    """Run every tier and return the winning session with its tier."""

    normalized = normalize(query)
    pool = routable(candidates)
    if not normalized or not pool:
        return RouteDecision(query=query, session=None)

    for tier, predicate in _TIERS:
        hits = [session for session in pool if predicate(normalized, session)]
        if not hits:
            continue
        for other_tier, narrow in _NARROWING:
            if other_tier == tier or len(hits) == 1:
                continue
            narrowed = [session for session in hits if narrow(normalized, session)]
            if narrowed:
                hits = narrowed
        ranked = _by_recency(hits)
        decided_by = tier if len(ranked) == 1 else Tier.RECENCY
        return RouteDecision(
            query=query,
            session=ranked[0],
            tier=decided_by,
            tied=[session.session_id for session in ranked[1:]],
        )

    return RouteDecision(query=query, session=None)


def match(query: str, candidates: Sequence[Session]) -> Session | None:
    """Return the best session for ``query`` or ``None`` when nothing matches."""

    return decide(query, candidates).session


__all__ = [
    "MIN_PARTIAL_LENGTH",
    "RouteDecision",
    "Tier",
    "decide",
    "match",
    "most_recent",
    "normalize",
    "routable",
]

"""Commit graph traversal: ancestors, merge base, fast-forward checks.

Every walk follows both ``parent_id`` and ``merge_parent_id``, keeps a
visited set and stops after :data:`MAX_TRAVERSAL` commits.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterator

from .graph import CommitStore
from .model import Commit

logger = logging.getLogger(__name__)

MAX_TRAVERSAL = 10_000


def _parents(store: CommitStore, commit_id: str) -> tuple[str, ...]:
    commit = store.get(commit_id)
    if commit is None:
        logger.warning("Commit %s missing during traversal", commit_id)
        return ()
    return commit.parents


def _bfs(store: CommitStore, start: str | None, limit: int | None = None) -> Iterator[str]:
    if not start:
        return
    if limit is None:
        limit = MAX_TRAVERSAL
    queue = deque([start])
    seen = {start}
    count = 0
    while queue:
        if count >= limit:
            logger.warning("Stopped walking history of %s after %d commits", start, limit)
            return
        current = queue.popleft()
        count += 1
        yield current
        for parent in _parents(store, current):
            if parent not in seen:
                seen.add(parent)
                queue.append(parent)


def ancestors(store: CommitStore, commit_id: str | None) -> set[str]:
    """``commit_id`` and everything reachable from it."""
    return set(_bfs(store, commit_id))


def is_ancestor(store: CommitStore, ancestor: str, descendant: str) -> bool:
    return ancestor in ancestors(store, descendant)


def find_common_ancestor(store: CommitStore, a: str | None, b: str | None) -> str | None:
    """Nearest commit reachable from both, by BFS order from ``b``.

    Returns None when either side is None or the histories are disjoint.
    """
    if not a or not b:
        return None
    if a == b:
        return a
    from_a = ancestors(store, a)
    for candidate in _bfs(store, b):
        if candidate in from_a:
            return candidate
    return None


def can_fast_forward(store: CommitStore, target: str | None, source: str | None) -> bool:
    """Whether moving ``target`` to ``source`` loses no history."""
    if not source:
        return False
    if not target:
        return True
    return target in ancestors(store, source)


def count_commits_between(store: CommitStore, ancestor: str | None, descendant: str | None) -> int:
    """Commits reachable from ``descendant`` but not from ``ancestor``."""
    if not descendant:
        return 0
    excluded = ancestors(store, ancestor)
    return sum(1 for c in _bfs(store, descendant) if c not in excluded)


@dataclass(frozen=True)
class CommitDistance:
    """How far ``source`` and ``target`` have drifted apart."""

    ahead: int
    behind: int
    merge_base: str | None


def distance(store: CommitStore, target: str | None, source: str | None) -> CommitDistance:
    """``ahead``: commits in source not in target; ``behind``: the reverse."""
    base = find_common_ancestor(store, target, source)
    return CommitDistance(
        ahead=count_commits_between(store, target, source),
        behind=count_commits_between(store, source, target),
        merge_base=base,
    )


def walk_history(
    store: CommitStore,
    start: str | None,
    limit: int | None = None,
    *,
    first_parent: bool = False,
) -> tuple[list[Commit], bool]:
    """Commits from ``start`` back through history.

    With ``first_parent`` only ``parent_id`` links are followed.
    Returns the commits and whether more remained beyond ``limit``.
    A missing commit ends the walk along that path.
    """
    cap = MAX_TRAVERSAL if limit is None else min(limit, MAX_TRAVERSAL)
    result: list[Commit] = []
    if not start:
        return result, False
    queue = deque([start])
    seen = {start}
    while queue:
        current = store.get(queue[0])
        if current is None:
            logger.warning("Commit %s missing during history walk", queue[0])
            queue.popleft()
            continue
        if len(result) >= cap:
            return result, True
        queue.popleft()
        result.append(current)
        parents = (current.parent_id,) if first_parent else current.parents
        for parent in parents:
            if parent and parent not in seen:
                seen.add(parent)
                queue.append(parent)
    return result, False

"""Three-way merge.

The per-path classification in :func:`classify` is shared by local
merges, pulls, server-side branch merges and the read-only
:func:`analyze_merge` preview. :class:`MergeEngine` drives the merge
state machine against a working tree:

    idle -> up-to-date | fast-forward | three-way | conflict
    conflict -> continue (three-way) | abort (idle)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Mapping, Protocol

from merge3 import Merge3

from .ancestry import can_fast_forward, distance, find_common_ancestor
from .diff import DiffStats, diff_snapshots
from .errors import ConflictError, ConflictsRemainError, InvalidArgumentError, NoCommonAncestorError
from .graph import CommitStore, load_commit
from .hashing import hash_bytes
from .model import Commit, ConflictInfo, ConflictType, MergeState
from .objects import atomic_write, is_text

if TYPE_CHECKING:
    from .repository import Repository

logger = logging.getLogger(__name__)

START_MARKER = "<<<<<<<"
MID_MARKER = "======="
END_MARKER = ">>>>>>>"


class BlobReader(Protocol):
    def read(self, blob_hash: str) -> bytes: ...
    def write_bytes(self, data: bytes) -> str: ...


class MergeStrategy(str, enum.Enum):
    UP_TO_DATE = "up-to-date"
    FAST_FORWARD = "fast-forward"
    THREE_WAY = "three-way"
    CONFLICT = "conflict"


# -- Content level --


def _with_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


def render_conflict(local: str, remote: str, label: str) -> str:
    """One marked conflict region: local section, separator, remote section."""
    return (
        f"{START_MARKER} HEAD\n"
        + _with_newline(local)
        + f"{MID_MARKER}\n"
        + _with_newline(remote)
        + f"{END_MARKER} {label}\n"
    )


def has_conflict_markers(text: str) -> bool:
    """True when start, separator and end markers are all present."""
    found = set()
    for line in text.splitlines():
        if line.startswith(START_MARKER + " ") or line == START_MARKER:
            found.add("start")
        elif line == MID_MARKER:
            found.add("mid")
        elif line.startswith(END_MARKER + " ") or line == END_MARKER:
            found.add("end")
    return len(found) == 3


@dataclass(frozen=True)
class ContentMerge:
    """``content`` is the merged bytes, with markers when ``conflict``."""

    content: bytes
    conflict: bool


def merge_contents(base: bytes | None, local: bytes, remote: bytes, label: str = "remote") -> ContentMerge:
    """Line-level merge of two edits of ``base``.

    Non-overlapping changes combine; overlapping hunks are wrapped in
    conflict markers. Binary content never merges and comes back as the
    local bytes flagged as a conflict.
    """
    base = base or b""
    if not (is_text(base) and is_text(local) and is_text(remote)):
        return ContentMerge(local, True)
    m3 = Merge3(
        base.decode("utf-8").splitlines(True),
        local.decode("utf-8").splitlines(True),
        remote.decode("utf-8").splitlines(True),
    )
    out: list[str] = []
    conflict = False
    for group in m3.merge_groups():
        if group[0] == "conflict":
            conflict = True
            out.append(render_conflict("".join(group[2]), "".join(group[3]), label))
        else:
            out.extend(group[1])
    return ContentMerge("".join(out).encode("utf-8"), conflict)


# -- Path level --


@dataclass
class ThreeWayResult:
    """Outcome of classifying every path of base/local/remote.

    ``merged`` holds the snapshot for all non-conflicting paths.
    ``worktree`` holds bytes to place in the working tree for paths
    whose resolved content is not a stored blob (marker files).
    """

    merged: dict[str, str] = field(default_factory=dict)
    auto_merged: list[str] = field(default_factory=list)
    conflicts: list[ConflictInfo] = field(default_factory=list)
    worktree: dict[str, bytes] = field(default_factory=dict)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def conflict_paths(self) -> list[str]:
        return [c.path for c in self.conflicts]


def classify(
    base: Mapping[str, str],
    local: Mapping[str, str],
    remote: Mapping[str, str],
    objects: BlobReader,
    *,
    label: str = "remote",
    write: bool = True,
) -> ThreeWayResult:
    """Apply the three-way rules to the union of paths.

    With ``write=False`` nothing is stored; merged blob hashes are still
    computed so the result is identical to a real merge.
    """
    result = ThreeWayResult()
    for path in sorted(set(base) | set(local) | set(remote)):
        b, l, r = base.get(path), local.get(path), remote.get(path)
        if l == r:
            if l is not None:
                result.merged[path] = l
            continue
        if b == l:
            # Remote-only change
            if r is not None:
                result.merged[path] = r
            result.auto_merged.append(path)
            continue
        if b == r:
            # Local-only change
            if l is not None:
                result.merged[path] = l
            result.auto_merged.append(path)
            continue
        if l is None or r is None:
            logger.debug("delete-modify conflict on %s", path)
            result.conflicts.append(ConflictInfo(path, b, l, r, ConflictType.DELETE_MODIFY))
            continue
        merged = merge_contents(
            objects.read(b) if b is not None else None,
            objects.read(l),
            objects.read(r),
            label,
        )
        if merged.conflict:
            kind = ConflictType.ADD_ADD if b is None else ConflictType.MODIFY_MODIFY
            logger.debug("%s conflict on %s", kind.value, path)
            result.conflicts.append(ConflictInfo(path, b, l, r, kind))
            result.worktree[path] = merged.content
            continue
        blob_hash = objects.write_bytes(merged.content) if write else hash_bytes(merged.content)
        result.merged[path] = blob_hash
        result.auto_merged.append(path)
    return result


@dataclass(frozen=True)
class MergeResult:
    strategy: MergeStrategy
    local_commit_id: str | None = None
    remote_commit_id: str | None = None
    base_commit_id: str | None = None
    merge_commit_id: str | None = None
    auto_merged: tuple[str, ...] = ()
    conflicts: tuple[ConflictInfo, ...] = ()
    message: str = ""

    def __bool__(self) -> bool:
        return self.strategy is not MergeStrategy.CONFLICT

    @property
    def head(self) -> str | None:
        """The commit the branch points at after this merge."""
        if self.strategy is MergeStrategy.THREE_WAY:
            return self.merge_commit_id
        if self.strategy is MergeStrategy.FAST_FORWARD:
            return self.remote_commit_id
        return self.local_commit_id


# -- Read-only preview --


@dataclass(frozen=True)
class MergeAnalysis:
    target_commit_id: str
    source_commit_id: str
    merge_base: str | None
    ahead: int
    behind: int
    up_to_date: bool
    can_fast_forward: bool
    conflicts: tuple[ConflictInfo, ...]
    stats: DiffStats

    @property
    def can_auto_merge(self) -> bool:
        return self.merge_base is not None and not self.conflicts

    @property
    def summary(self) -> str:
        if self.up_to_date:
            return "Already up to date"
        if self.merge_base is None:
            return "No common ancestor"
        if self.can_fast_forward:
            return f"Fast-forward possible ({self.ahead} commit(s) ahead)"
        if self.conflicts:
            return f"{len(self.conflicts)} conflict(s) must be resolved"
        return f"Can merge automatically ({self.stats.files_changed} file(s) changed)"

    def to_dict(self) -> dict:
        return {
            "targetCommitId": self.target_commit_id,
            "sourceCommitId": self.source_commit_id,
            "mergeBase": self.merge_base,
            "ahead": self.ahead,
            "behind": self.behind,
            "upToDate": self.up_to_date,
            "canFastForward": self.can_fast_forward,
            "canAutoMerge": self.can_auto_merge,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "stats": self.stats.to_dict(),
            "summary": self.summary,
        }


def analyze_merge(
    commits: CommitStore,
    objects: BlobReader,
    target_id: str,
    source_id: str,
) -> MergeAnalysis:
    """Preview merging ``source`` into ``target`` without changing anything."""
    target = load_commit(commits, target_id)
    source = load_commit(commits, source_id)
    dist = distance(commits, target.id, source.id)
    up_to_date = target.id == source.id or dist.merge_base == source.id
    ff = not up_to_date and can_fast_forward(commits, target.id, source.id)
    conflicts: tuple[ConflictInfo, ...] = ()
    merged: Mapping[str, str] = target.files
    if ff:
        merged = source.files
    elif not up_to_date and dist.merge_base is not None:
        base = load_commit(commits, dist.merge_base)
        outcome = classify(base.files, target.files, source.files, objects, write=False)
        conflicts = tuple(outcome.conflicts)
        merged = dict(outcome.merged)
        for conflict in conflicts:
            if conflict.local is not None:
                merged[conflict.path] = conflict.local
    return MergeAnalysis(
        target_commit_id=target.id,
        source_commit_id=source.id,
        merge_base=dist.merge_base,
        ahead=dist.ahead,
        behind=dist.behind,
        up_to_date=up_to_date,
        can_fast_forward=ff,
        conflicts=conflicts,
        stats=DiffStats.from_changes(diff_snapshots(target.files, merged)),
    )


def merge_commits(
    commits: CommitStore,
    objects: BlobReader,
    local_id: str,
    remote_id: str,
    *,
    message: str,
    label: str = "remote",
    timestamp: int | None = None,
) -> tuple[MergeResult, ThreeWayResult | None]:
    """Decide a merge of two stored commits and build the merge commit.

    Nothing outside ``commits``/``objects`` is touched; moving refs and
    rewriting a working tree is the caller's job. A merge commit is
    stored only when there are no conflicts.
    """
    if local_id == remote_id:
        return MergeResult(MergeStrategy.UP_TO_DATE, local_id, remote_id, local_id), None
    base_id = find_common_ancestor(commits, local_id, remote_id)
    if base_id is None:
        raise NoCommonAncestorError(f"No common ancestor between {local_id[:8]} and {remote_id[:8]}")
    if base_id == remote_id:
        return MergeResult(MergeStrategy.UP_TO_DATE, local_id, remote_id, base_id), None
    if base_id == local_id:
        return MergeResult(MergeStrategy.FAST_FORWARD, local_id, remote_id, base_id), None

    base = load_commit(commits, base_id)
    local = load_commit(commits, local_id)
    remote = load_commit(commits, remote_id)
    outcome = classify(base.files, local.files, remote.files, objects, label=label)
    if outcome.has_conflicts:
        return (
            MergeResult(
                MergeStrategy.CONFLICT,
                local_id,
                remote_id,
                base_id,
                auto_merged=tuple(outcome.auto_merged),
                conflicts=tuple(outcome.conflicts),
                message=message,
            ),
            outcome,
        )
    commit = Commit.create(message, outcome.merged, local_id, remote_id, timestamp)
    commits.put(commit)
    return (
        MergeResult(
            MergeStrategy.THREE_WAY,
            local_id,
            remote_id,
            base_id,
            merge_commit_id=commit.id,
            auto_merged=tuple(outcome.auto_merged),
            message=message,
        ),
        outcome,
    )


# -- Working-tree state machine --


class MergeStateStore:
    """``MERGE_STATE`` in the metadata directory."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> MergeState | None:
        if not self.path.exists():
            return None
        return MergeState.from_json(self.path.read_bytes())

    def save(self, state: MergeState) -> None:
        atomic_write(self.path, state.to_json())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.exists()


def untracked_collisions(untracked: list[str], incoming: Mapping[str, str]) -> list[str]:
    """Untracked paths that writing ``incoming`` would overwrite or shadow.

    A path collides when it is itself incoming, sits under an incoming
    file, or is a file where an incoming path needs a directory.
    """
    prefixes = {str(parent) for path in incoming for parent in PurePosixPath(path).parents}
    return sorted(
        path for path in untracked
        if path in incoming
        or path in prefixes
        or any(str(parent) in incoming for parent in PurePosixPath(path).parents)
    )


class MergeEngine:
    """Merges into the checked-out branch of a local repository."""

    def __init__(self, repo: Repository) -> None:
        self.repo = repo
        self.state = MergeStateStore(repo.meta / "MERGE_STATE")

    def is_merge_in_progress(self) -> bool:
        return self.state.exists()

    def merge_state(self) -> MergeState | None:
        return self.state.load()

    def merge(
        self,
        remote_id: str,
        branch: str,
        *,
        message: str | None = None,
        label: str | None = None,
    ) -> MergeResult:
        """Merge commit ``remote_id`` (from ``branch``) into HEAD.

        Returns a CONFLICT result, not an exception, when paths could
        not be merged; the working tree then holds the merged files
        plus marked-up conflict files and MERGE_STATE is saved.
        """
        repo = self.repo
        if self.is_merge_in_progress():
            raise ConflictError("A merge is already in progress; continue or abort it first")
        status = repo.status()
        if status.has_tracked_changes:
            raise ConflictError("Uncommitted changes in the working tree; commit them before merging")
        remote = load_commit(repo.commits, remote_id)
        blocking = untracked_collisions(status.untracked, remote.files)
        if blocking:
            raise ConflictError(
                "Untracked files would be overwritten by merge: " + ", ".join(blocking)
            )
        message = message or f"Merge branch '{branch}'"
        local_id = repo.current_head()

        if local_id is None:
            repo.check_writable(remote.files, prune_untracked=False)
            repo.advance_head(remote_id, None)
            repo.replace_tree_with_commit(remote_id, prune_untracked=False)
            logger.info("Fast-forwarded unborn HEAD to %s", remote_id[:8])
            return MergeResult(MergeStrategy.FAST_FORWARD, None, remote_id, None)

        result, outcome = merge_commits(
            repo.commits,
            repo.objects,
            local_id,
            remote_id,
            message=message,
            label=label or branch,
        )
        if result.strategy is MergeStrategy.UP_TO_DATE:
            return result
        if result.strategy is MergeStrategy.FAST_FORWARD:
            repo.check_writable(remote.files, prune_untracked=False)
            repo.advance_head(remote_id, local_id)
            repo.replace_tree_with_commit(remote_id, prune_untracked=False)
            logger.info("Fast-forwarded to %s", remote_id[:8])
            return result

        assert outcome is not None
        contents = {p: repo.objects.read(h) for p, h in outcome.merged.items()}
        staged = dict(outcome.merged)
        for conflict in outcome.conflicts:
            kept = conflict.local if conflict.local is not None else conflict.remote
            if conflict.path in outcome.worktree:
                contents[conflict.path] = outcome.worktree[conflict.path]
            elif kept is not None:
                contents[conflict.path] = repo.objects.read(kept)
            if kept is not None:
                staged[conflict.path] = kept

        if result.strategy is MergeStrategy.THREE_WAY:
            assert result.merge_commit_id is not None
            repo.check_writable(contents, prune_untracked=False)
            repo.advance_head(result.merge_commit_id, local_id)
            repo.replace_tree(contents, outcome.merged, prune_untracked=False)
            logger.info("Merged %s into %s as %s", remote_id[:8], local_id[:8], result.merge_commit_id[:8])
            return result

        repo.replace_tree(contents, staged, prune_untracked=False)
        self.state.save(
            MergeState(
                local_commit_id=local_id,
                remote_commit_id=remote_id,
                base_commit_id=result.base_commit_id or "",
                branch=branch,
                conflicts=result.conflicts,
                message=message,
            )
        )
        logger.info("Merge stopped with %d conflict(s); MERGE_STATE saved", len(result.conflicts))
        return result

    def continue_merge(self, timestamp: int | None = None) -> MergeResult:
        """Commit the resolved merge.

        Conflicted paths are re-staged from the working tree first; a
        path removed from the tree is staged as a deletion.
        """
        repo = self.repo
        state = self.state.load()
        if state is None:
            raise InvalidArgumentError("No merge in progress")
        remaining = []
        for path in state.conflict_paths:
            file = repo.root / path
            if not file.exists():
                repo.index.remove_file(path)
                continue
            data = file.read_bytes()
            if is_text(data) and has_conflict_markers(data.decode("utf-8")):
                remaining.append(path)
                continue
            repo.index.update_file(path, repo.objects.write_bytes(data))
        if remaining:
            raise ConflictsRemainError(remaining)
        repo.index.save()

        commit = Commit.create(
            state.message,
            repo.index.entries(),
            state.local_commit_id,
            state.remote_commit_id,
            timestamp,
        )
        repo.commits.put(commit)
        repo.advance_head(commit.id, state.local_commit_id)
        self.state.clear()
        logger.info("Completed merge commit %s", commit.short_id)
        return MergeResult(
            MergeStrategy.THREE_WAY,
            state.local_commit_id,
            state.remote_commit_id,
            state.base_commit_id,
            merge_commit_id=commit.id,
            message=state.message,
        )

    def abort_merge(self) -> None:
        """Restore the local commit's tree and index, drop MERGE_STATE."""
        state = self.state.load()
        if state is None:
            raise InvalidArgumentError("No merge in progress")
        self.repo.replace_tree_with_commit(state.local_commit_id, prune_untracked=False)
        self.state.clear()
        logger.info("Merge aborted; restored %s", state.local_commit_id[:8])

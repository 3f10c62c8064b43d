"""Local repository: working tree, index, refs and HEAD.

Every operation works on an explicit root; :func:`find_repository_root`
is the only place that searches parent directories for one.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping

from .ancestry import is_ancestor, walk_history
from .diff import FileChange, diff_snapshots, diff_trees, with_patches
from .errors import (
    AlreadyExistsError,
    ConflictError,
    CorruptError,
    EmptyCommitError,
    InvalidArgumentError,
    IOFailureError,
    NoCommitsYetError,
    NotFoundError,
    RepositoryNotFoundError,
)
from .graph import (
    FileCommitStore,
    FileRefStore,
    create_branch_ref,
    load_commit,
    read_head,
    rename_branch_ref,
    validate_branch_name,
    write_head,
)
from .hashing import hash_bytes, hash_file
from .ignore import IGNORE_FILE, META_DIR, IgnoreMatcher, in_meta_dir, relative_path
from .index import StagingIndex, Status, get_status, walk_working_tree
from .merge import MergeEngine, MergeResult
from .model import Commit, DetachedHead, Head, SymbolicHead
from .objects import FileSystemStorage, ObjectStore, atomic_write

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"


def find_repository_root(start: str | os.PathLike | None = None) -> Path:
    """Nearest directory at or above ``start`` holding a metadata directory."""
    current = Path(start or os.getcwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / META_DIR).is_dir():
            return candidate
    raise RepositoryNotFoundError(f"Not a strata repository (or any parent): {current}")


def check_snapshot_path(path: str) -> str:
    """Reject paths that would escape the working tree."""
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or "\\" in path or ".." in pure.parts or in_meta_dir(path):
        raise CorruptError(f"Unsafe path in snapshot: {path!r}")
    return path


@dataclass(frozen=True)
class BranchInfo:
    name: str
    commit_id: str
    current: bool


@dataclass(frozen=True)
class LogEntry:
    commit: Commit
    decorations: tuple[str, ...] = ()


class Repository:
    """A working tree plus its ``.strata`` metadata directory."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root).resolve()
        self.meta = self.root / META_DIR
        if not self.meta.is_dir():
            raise RepositoryNotFoundError(f"Not a strata repository: {self.root}")
        self.ignore = IgnoreMatcher(self.root)
        self.objects = ObjectStore(FileSystemStorage(self.meta / "objects"), self.root, self.ignore)
        self.commits = FileCommitStore(self.meta / "commits")
        self.refs = FileRefStore(self.meta / "refs" / "heads", self.meta / "refs.lock")
        self.index = StagingIndex(self.meta / "index")
        self.merges = MergeEngine(self)

    @classmethod
    def init(cls, root: str | os.PathLike, default_branch: str = DEFAULT_BRANCH) -> Repository:
        """Create an empty repository; HEAD names the unborn default branch."""
        validate_branch_name(default_branch)
        root = Path(root)
        meta = root / META_DIR
        if meta.exists():
            raise AlreadyExistsError(f"Repository already exists at {root}")
        for sub in ("objects", "commits", "refs/heads"):
            (meta / sub).mkdir(parents=True, exist_ok=True)
        write_head(meta / "HEAD", SymbolicHead(default_branch))
        atomic_write(meta / "index", b"{}")
        atomic_write(meta / "config", json.dumps({"defaultBranch": default_branch}).encode("utf-8"))
        logger.info("Initialized empty repository in %s", meta)
        return cls(root)

    @classmethod
    def discover(cls, start: str | os.PathLike | None = None) -> Repository:
        return cls(find_repository_root(start))

    @property
    def default_branch(self) -> str:
        try:
            config = json.loads((self.meta / "config").read_text(encoding="utf-8"))
        except FileNotFoundError:
            return DEFAULT_BRANCH
        except ValueError as e:
            raise CorruptError(f"Unparsable repository config: {e}") from e
        return config.get("defaultBranch", DEFAULT_BRANCH)

    # -- HEAD --

    def head(self) -> Head:
        return read_head(self.meta / "HEAD")

    def set_head(self, head: Head) -> None:
        write_head(self.meta / "HEAD", head)

    def current_branch(self) -> str | None:
        """Branch HEAD names, or None when detached."""
        head = self.head()
        return head.branch if isinstance(head, SymbolicHead) else None

    def current_head(self) -> str | None:
        """Commit id HEAD resolves to, or None on an unborn branch."""
        head = self.head()
        if isinstance(head, DetachedHead):
            return head.commit_id
        return self.refs.get(head.branch)

    def head_commit(self) -> Commit | None:
        commit_id = self.current_head()
        return load_commit(self.commits, commit_id) if commit_id else None

    def advance_head(self, new: str, expected: str | None) -> None:
        """Move the current branch (or detached HEAD) from ``expected`` to ``new``.

        Raises:
            ConflictError: The branch moved since ``expected`` was read.
        """
        head = self.head()
        if isinstance(head, DetachedHead):
            if head.commit_id != expected:
                raise ConflictError("HEAD moved concurrently")
            self.set_head(DetachedHead(new))
            return
        if not self.refs.compare_and_set(head.branch, new, expected):
            raise ConflictError(f"Branch '{head.branch}' was updated concurrently")
        logger.info("Branch %s -> %s", head.branch, new[:8])

    def resolve(self, revision: str) -> str:
        """Commit id for a branch name, full commit id or unique id prefix."""
        if revision == "HEAD":
            commit_id = self.current_head()
            if commit_id is None:
                raise NoCommitsYetError("HEAD has no commits yet")
            return commit_id
        try:
            commit_id = self.refs.get(revision)
        except InvalidArgumentError:
            commit_id = None
        if commit_id:
            return commit_id
        if self.commits.exists(revision):
            return revision
        if len(revision) >= 4:
            matches = [c for c in self.commits.ids() if c.startswith(revision)]
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise InvalidArgumentError(f"Ambiguous commit prefix: {revision}")
        raise NotFoundError(f"Unknown revision: {revision}")

    # -- Staging --

    def _relative(self, path: str | os.PathLike) -> str:
        try:
            return relative_path(self.root, path)
        except ValueError:
            raise InvalidArgumentError(f"Path is outside the repository: {path}") from None

    def add(self, paths: Iterable[str | os.PathLike]) -> list[str]:
        """Stage files or directories; staged paths whose file is gone are removed.

        Returns the repository-relative paths whose index entry changed.
        """
        changed: list[str] = []
        staged = self.index.entries()
        self.reload_ignore()
        for raw in paths:
            rel = self._relative(raw)
            if rel in ("", "."):
                rel = ""
            target = self.root / rel if rel else self.root
            if target.is_dir():
                prefix = rel + "/" if rel else ""
                present = [p for p in walk_working_tree(self.root, self.ignore) if p.startswith(prefix)]
                gone = [
                    p for p in staged
                    if (p.startswith(prefix) or p == rel) and not (self.root / p).is_file()
                ]
            elif target.is_file():
                # A directory that became a file leaves its old entries behind.
                present = [rel]
                gone = [p for p in staged if p.startswith(rel + "/")]
            elif rel in staged:
                present, gone = [], [rel]
            else:
                raise NotFoundError(f"Path not found: {raw}")
            for path in present:
                blob_hash = self.objects.write_file(path)
                if blob_hash is None:
                    logger.debug("Not staging ignored path %s", path)
                    continue
                if staged.get(path) != blob_hash:
                    self.index.update_file(path, blob_hash)
                    staged[path] = blob_hash
                    changed.append(path)
            for path in gone:
                self.index.remove_file(path)
                staged.pop(path, None)
                changed.append(path)
        self.index.save()
        return sorted(set(changed))

    def reload_ignore(self) -> IgnoreMatcher:
        """Re-read the ignore file; it may change at any time."""
        self.ignore = IgnoreMatcher(self.root)
        self.objects.ignore = self.ignore
        return self.ignore

    def status(self) -> Status:
        self.reload_ignore()
        return get_status(self.root, self.index, self.ignore)

    def is_dirty(self, include_untracked: bool = False) -> bool:
        status = self.status()
        if include_untracked:
            return not status.is_clean
        return status.has_tracked_changes

    # -- Commit --

    def commit(self, message: str, timestamp: int | None = None) -> Commit:
        if self.merges.is_merge_in_progress():
            raise ConflictError("A merge is in progress; use merge --continue to commit it")
        entries = self.index.entries()
        if not entries:
            raise EmptyCommitError("Nothing staged: the index is empty")
        for path, blob_hash in entries.items():
            if self.objects.exists(blob_hash):
                continue
            file = self.root / path
            if file.is_file() and hash_file(file) == blob_hash:
                self.objects.write_file(path)
            else:
                raise NotFoundError(f"Blob for {path} is missing; add the file again")
        parent_id = self.current_head()
        commit = Commit.create(message, entries, parent_id, timestamp=timestamp)
        self.commits.put(commit)
        self.advance_head(commit.id, parent_id)
        logger.info("Committed %s (%d file(s))", commit.short_id, len(entries))
        return commit

    # -- Branches --

    def list_branches(self) -> list[BranchInfo]:
        """All branches, the current one first, then by name."""
        current = self.current_branch()
        infos = [BranchInfo(name, commit_id, name == current) for name, commit_id in self.refs.list().items()]
        return sorted(infos, key=lambda b: (not b.current, b.name))

    def create_branch(self, name: str, start: str | None = None) -> BranchInfo:
        if start is None:
            commit_id = self.current_head()
            if commit_id is None:
                raise NoCommitsYetError("Cannot create a branch before the first commit")
        else:
            commit_id = self.resolve(start)
        create_branch_ref(self.refs, name, commit_id)
        logger.info("Created branch %s at %s", name, commit_id[:8])
        return BranchInfo(name, commit_id, False)

    def delete_branch(self, name: str, force: bool = False) -> str:
        """Delete a branch; returns the commit it pointed at.

        Without ``force`` a branch whose tip HEAD cannot reach is kept.
        """
        if name == self.current_branch():
            raise ConflictError(f"Cannot delete the current branch '{name}'")
        commit_id = self.refs.get(name)
        if commit_id is None:
            raise NotFoundError(f"Branch '{name}' not found")
        head = self.current_head()
        if not force and (head is None or not is_ancestor(self.commits, commit_id, head)):
            raise ConflictError(f"Branch '{name}' is not fully merged; use force to delete it")
        self.refs.delete(name)
        logger.info("Deleted branch %s (was %s)", name, commit_id[:8])
        return commit_id

    def rename_branch(self, old: str, new: str) -> None:
        rename_branch_ref(self.refs, old, new)
        if self.current_branch() == old:
            self.set_head(SymbolicHead(new))

    # -- Working tree --

    def replace_tree(
        self,
        contents: Mapping[str, bytes],
        staged: Mapping[str, str],
        *,
        prune_untracked: bool = True,
    ) -> None:
        """Make the working tree hold exactly ``contents`` and stage ``staged``.

        Existing files are removed first (untracked ones too unless
        ``prune_untracked`` is off). The ignore file and ignored paths
        stay. On failure the previous files are put back.
        """
        for path in contents:
            check_snapshot_path(path)
        doomed = self.check_writable(contents, prune_untracked=prune_untracked)
        backup = {p: (self.root / p).read_bytes() for p in doomed}
        written: list[str] = []
        try:
            for path in doomed:
                (self.root / path).unlink()
            # A directory emptied above may be where a file now goes.
            self._prune_empty_dirs(doomed)
            for path, data in sorted(contents.items()):
                target = self.root / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
                written.append(path)
        except OSError as e:
            for path in written:
                (self.root / path).unlink(missing_ok=True)
            for path, data in backup.items():
                target = self.root / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            raise IOFailureError(f"Could not rewrite working tree: {e}") from e
        self.index.replace(staged)
        self.index.save()
        if IGNORE_FILE in contents or IGNORE_FILE in backup:
            self.reload_ignore()

    def check_writable(self, paths: Iterable[str], *, prune_untracked: bool = True) -> list[str]:
        """Files a rewrite to ``paths`` would remove.

        Raises:
            ConflictError: A file the rewrite keeps (ignored, or untracked
                with ``prune_untracked`` off) is in the way of one of
                ``paths``. Nothing has been touched.
        """
        paths = set(paths)
        self.reload_ignore()
        tracked = self.index.entries()
        doomed = [
            p for p in walk_working_tree(self.root, self.ignore)
            if p != IGNORE_FILE and (prune_untracked or p in tracked or p in paths)
        ]
        removed = set(doomed)
        for path in paths:
            target = self.root / path
            if target.is_dir():
                kept = [
                    relative_path(self.root, p) for p in target.rglob("*")
                    if p.is_file() and relative_path(self.root, p) not in removed
                ]
                if kept:
                    raise ConflictError(
                        f"Cannot write '{path}': directory holds files that would be lost"
                    )
            for parent in PurePosixPath(path).parents:
                name = str(parent)
                if name != "." and (self.root / name).is_file() and name not in removed:
                    raise ConflictError(f"Cannot write '{path}': '{name}' is a file")
        return doomed

    def _prune_empty_dirs(self, removed: Iterable[str]) -> None:
        for path in removed:
            parent = (self.root / path).parent
            while parent != self.root and parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent

    def replace_tree_with_commit(self, commit_id: str, prune_untracked: bool = True) -> Commit:
        """Check out ``commit_id``'s files; every blob is loaded before anything is removed."""
        commit = load_commit(self.commits, commit_id)
        contents = {path: self.objects.read(h) for path, h in commit.files.items()}
        self.replace_tree(contents, commit.files, prune_untracked=prune_untracked)
        return commit

    def _check_can_checkout(self, force: bool) -> None:
        if self.merges.is_merge_in_progress():
            raise ConflictError("A merge is in progress; continue or abort it first")
        if not force and self.is_dirty(include_untracked=True):
            raise ConflictError("Uncommitted changes would be overwritten; commit them or use force")

    def checkout_branch(self, name: str, force: bool = False) -> Commit:
        commit_id = self.refs.get(name)
        if commit_id is None:
            raise NotFoundError(f"Branch '{name}' not found")
        self._check_can_checkout(force)
        commit = self.replace_tree_with_commit(commit_id)
        self.set_head(SymbolicHead(name))
        logger.info("Switched to branch %s", name)
        return commit

    def checkout_commit(self, revision: str, force: bool = False) -> Commit:
        commit_id = self.resolve(revision)
        self._check_can_checkout(force)
        commit = self.replace_tree_with_commit(commit_id)
        self.set_head(DetachedHead(commit_id))
        logger.info("HEAD detached at %s", commit.short_id)
        return commit

    def switch(self, name: str, create: bool = False, force: bool = False) -> Commit:
        if create:
            self.create_branch(name)
        return self.checkout_branch(name, force=force)

    def restore_file(self, path: str | os.PathLike) -> str:
        """Rewrite one working-tree file from the HEAD commit."""
        commit = self.head_commit()
        if commit is None:
            raise NoCommitsYetError("HEAD has no commits yet")
        rel = self._relative(path)
        blob_hash = commit.files.get(rel)
        if blob_hash is None:
            raise NotFoundError(f"Path '{rel}' not found in HEAD commit")
        target = self.root / check_snapshot_path(rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.objects.read(blob_hash))
        return rel

    def reset(self, revision: str, hard: bool = False) -> Commit:
        """Point the current branch at ``revision``.

        The index follows; with ``hard`` the working tree does too.
        """
        commit = load_commit(self.commits, self.resolve(revision))
        if self.merges.is_merge_in_progress():
            raise ConflictError("A merge is in progress; continue or abort it first")
        if hard:
            self.replace_tree_with_commit(commit.id)
        else:
            self.index.replace(commit.files)
            self.index.save()
        self.advance_head(commit.id, self.current_head())
        return commit

    # -- History and diffs --

    def log(
        self,
        limit: int | None = None,
        path: str | None = None,
        start: str | None = None,
    ) -> list[LogEntry]:
        """Commits reachable from ``start`` (default HEAD) over both parents."""
        origin = self.resolve(start) if start else self.current_head()
        commits, _ = walk_history(self.commits, origin, None if path else limit)
        if path is not None:
            rel = self._relative(path)
            commits = [c for c in commits if self._touches(c, rel)]
            if limit is not None:
                commits = commits[:limit]
        decorations: dict[str, list[str]] = {}
        for name, commit_id in self.refs.list().items():
            decorations.setdefault(commit_id, []).append(name)
        head = self.current_head()
        if head:
            decorations.setdefault(head, []).insert(0, "HEAD")
        return [LogEntry(c, tuple(decorations.get(c.id, ()))) for c in commits]

    def _touches(self, commit: Commit, path: str) -> bool:
        parent = self.commits.get(commit.parent_id) if commit.parent_id else None
        before = parent.files.get(path) if parent else None
        return commit.files.get(path) != before

    def diff_staged(self, patch: bool = True, context: int | None = None) -> list[FileChange]:
        """HEAD commit -> staging index."""
        commit = self.head_commit()
        base = commit.files if commit else {}
        return diff_trees(self.objects, base, self.index.entries(), include_patch=patch, context=context)

    def diff_working(self, patch: bool = True, context: int | None = None) -> list[FileChange]:
        """Staging index -> working tree, for tracked paths."""
        staged = self.index.entries()
        working: dict[str, str] = {}
        contents: dict[str, bytes] = {}
        for path in staged:
            file = self.root / path
            if file.is_file():
                data = file.read_bytes()
                working[path] = hash_bytes(data)
                contents[working[path]] = data
        changes = diff_snapshots(staged, working)
        if not patch:
            return changes

        def read(blob_hash: str) -> bytes:
            if blob_hash in contents:
                return contents[blob_hash]
            return self.objects.read(blob_hash)

        return with_patches(read, changes, context)

    def diff_commits(self, old: str, new: str, patch: bool = True, context: int | None = None) -> list[FileChange]:
        a = load_commit(self.commits, self.resolve(old))
        b = load_commit(self.commits, self.resolve(new))
        return diff_trees(self.objects, a.files, b.files, include_patch=patch, context=context)

    # -- Merge --

    def merge_branch(self, name: str, message: str | None = None) -> MergeResult:
        """Merge branch ``name`` into HEAD."""
        commit_id = self.refs.get(name)
        if commit_id is None:
            raise NotFoundError(f"Branch '{name}' not found")
        return self.merges.merge(commit_id, name, message=message)

    def continue_merge(self, timestamp: int | None = None) -> MergeResult:
        return self.merges.continue_merge(timestamp)

    def abort_merge(self) -> None:
        self.merges.abort_merge()

    def is_merge_in_progress(self) -> bool:
        return self.merges.is_merge_in_progress()


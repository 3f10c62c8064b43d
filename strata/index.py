"""Staging index and working-tree status."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Mapping

from .errors import CorruptError
from .hashing import hash_file
from .ignore import IgnoreMatcher, META_DIR
from .objects import atomic_write

logger = logging.getLogger(__name__)


class StagingIndex:
    """Path -> blob hash mapping describing the next commit.

    Persisted as a JSON object at ``.strata/index``; changes are held
    in memory until :meth:`save`.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._entries: dict[str, str] = {}
        self.load()

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            self._entries = {}
            return self.entries()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError as e:
            raise CorruptError(f"Unparsable index: {e}") from e
        if not isinstance(data, dict):
            raise CorruptError("Index must be a JSON object")
        self._entries = {str(k): str(v) for k, v in data.items()}
        return self.entries()

    def save(self) -> None:
        body = json.dumps(dict(sorted(self._entries.items())), indent=2)
        atomic_write(self.path, body.encode("utf-8"))

    def entries(self) -> dict[str, str]:
        return dict(self._entries)

    def update_file(self, path: str, blob_hash: str) -> None:
        self._entries[path] = blob_hash

    def remove_file(self, path: str) -> None:
        self._entries.pop(path, None)

    def replace(self, snapshot: Mapping[str, str]) -> None:
        self._entries = dict(snapshot)

    def clear(self) -> None:
        self._entries = {}

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Status:
    untracked: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.untracked or self.modified or self.deleted)

    @property
    def has_tracked_changes(self) -> bool:
        return bool(self.modified or self.deleted)


def walk_working_tree(root: str | os.PathLike, matcher: IgnoreMatcher) -> Iterator[str]:
    """Relative forward-slash paths of regular files, ignored ones skipped."""
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"
        dirnames[:] = sorted(
            d for d in dirnames
            if d != META_DIR and not matcher.is_ignored(prefix + d, is_dir=True)
        )
        for name in sorted(filenames):
            rel = prefix + name
            full = Path(dirpath) / name
            if full.is_symlink() or not full.is_file():
                continue
            if matcher.is_ignored(rel):
                continue
            yield rel


def get_status(root: str | os.PathLike, index: StagingIndex, matcher: IgnoreMatcher) -> Status:
    """Compare the working tree against the staging index."""
    root = Path(root)
    staged = index.entries()
    status = Status()
    seen = set()
    for rel in walk_working_tree(root, matcher):
        seen.add(rel)
        if rel not in staged:
            status.untracked.append(rel)
        elif hash_file(root / rel) != staged[rel]:
            status.modified.append(rel)
    status.deleted = sorted(p for p in staged if p not in seen)
    status.untracked.sort()
    status.modified.sort()
    return status

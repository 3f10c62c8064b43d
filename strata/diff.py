"""Snapshot and line-level diffs."""

from __future__ import annotations

import difflib
import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from .objects import ObjectStore, is_text


class ChangeType(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class LinePatch:
    """Rendered ``-``/``+`` lines with their counts."""

    lines: tuple[str, ...]
    added: int
    deleted: int


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: ChangeType
    old_hash: str | None
    new_hash: str | None
    binary: bool = False
    patch: LinePatch | None = None
    hunks: tuple[str, ...] = ()

    @property
    def lines_added(self) -> int:
        return self.patch.added if self.patch else 0

    @property
    def lines_deleted(self) -> int:
        return self.patch.deleted if self.patch else 0


def diff_snapshots(old: Mapping[str, str], new: Mapping[str, str]) -> list[FileChange]:
    """Path-level changes from ``old`` to ``new``, sorted by path."""
    changes = []
    for path in sorted(set(old) | set(new)):
        before, after = old.get(path), new.get(path)
        if before == after:
            continue
        if before is None:
            kind = ChangeType.ADDED
        elif after is None:
            kind = ChangeType.DELETED
        else:
            kind = ChangeType.MODIFIED
        changes.append(FileChange(path, kind, before, after))
    return changes


def split_lines(text: str) -> list[str]:
    """Lines of ``text``; a trailing newline does not add an empty line."""
    if text == "":
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def line_diff(old_text: str, new_text: str) -> LinePatch:
    """Positional comparison: line *i* of each side against the other.

    Differing positions emit ``-old`` then ``+new``; surplus lines on
    either side are pure deletions or additions.
    """
    old_lines, new_lines = split_lines(old_text), split_lines(new_text)
    out: list[str] = []
    added = deleted = 0
    for i in range(max(len(old_lines), len(new_lines))):
        before = old_lines[i] if i < len(old_lines) else None
        after = new_lines[i] if i < len(new_lines) else None
        if before == after:
            continue
        if before is not None:
            out.append(f"-{before}")
            deleted += 1
        if after is not None:
            out.append(f"+{after}")
            added += 1
    return LinePatch(tuple(out), added, deleted)


def unified_diff(old_text: str, new_text: str, path: str, context: int = 3) -> list[str]:
    """A ``difflib`` unified patch, for display."""
    return list(
        difflib.unified_diff(
            split_lines(old_text),
            split_lines(new_text),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            n=context,
            lineterm="",
        )
    )


def _text(read: Callable[[str], bytes], blob_hash: str | None) -> str | None:
    """Decoded blob, "" for absent, None for binary."""
    if blob_hash is None:
        return ""
    data = read(blob_hash)
    return data.decode("utf-8") if is_text(data) else None


def with_patches(
    read: Callable[[str], bytes],
    changes: Iterable[FileChange],
    context: int | None = None,
) -> list[FileChange]:
    """Attach line patches; binary files are flagged and left unpatched.

    With ``context`` set, unified hunks with that many context lines are
    attached too.
    """
    result = []
    for change in changes:
        old, new = _text(read, change.old_hash), _text(read, change.new_hash)
        if old is None or new is None:
            result.append(FileChange(change.path, change.change_type, change.old_hash, change.new_hash, binary=True))
            continue
        result.append(
            FileChange(
                change.path,
                change.change_type,
                change.old_hash,
                change.new_hash,
                patch=line_diff(old, new),
                hunks=tuple(unified_diff(old, new, change.path, context)) if context is not None else (),
            )
        )
    return result


def diff_trees(
    objects: ObjectStore,
    old: Mapping[str, str],
    new: Mapping[str, str],
    include_patch: bool = True,
    context: int | None = None,
) -> list[FileChange]:
    changes = diff_snapshots(old, new)
    return with_patches(objects.read, changes, context) if include_patch else changes


@dataclass(frozen=True)
class DiffStats:
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def files_changed(self) -> int:
        return self.files_added + self.files_modified + self.files_deleted

    @property
    def total_changes(self) -> int:
        return self.lines_added + self.lines_deleted

    @classmethod
    def from_changes(cls, changes: Iterable[FileChange]) -> DiffStats:
        changes = list(changes)
        return cls(
            files_added=sum(c.change_type is ChangeType.ADDED for c in changes),
            files_modified=sum(c.change_type is ChangeType.MODIFIED for c in changes),
            files_deleted=sum(c.change_type is ChangeType.DELETED for c in changes),
            lines_added=sum(c.lines_added for c in changes),
            lines_deleted=sum(c.lines_deleted for c in changes),
            paths=tuple(c.path for c in changes),
        )

    def to_dict(self) -> dict:
        return {
            "filesChanged": self.files_changed,
            "filesAdded": self.files_added,
            "filesModified": self.files_modified,
            "filesDeleted": self.files_deleted,
            "totalLinesAdded": self.lines_added,
            "totalLinesDeleted": self.lines_deleted,
        }

"""Commit, HEAD and merge-state value types."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import CorruptError
from .hashing import canonical_json, hash_string

FileSnapshot = dict[str, str]
"""Repository-relative forward-slash path -> blob hash."""


def now_millis() -> int:
    return int(time.time() * 1000)


def compute_commit_id(
    parent_id: str | None,
    merge_parent_id: str | None,
    message: str,
    timestamp: int,
    files: Mapping[str, str],
) -> str:
    """Hash of the canonical JSON of every commit field except ``id``."""
    payload = {
        "parentId": parent_id,
        "mergeParentId": merge_parent_id,
        "message": message,
        "timestamp": timestamp,
        "files": dict(files),
    }
    return hash_string(canonical_json(payload))


@dataclass(frozen=True)
class Commit:
    """An immutable snapshot of the tracked tree."""

    id: str
    parent_id: str | None
    merge_parent_id: str | None
    message: str
    timestamp: int
    files: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        message: str,
        files: Mapping[str, str],
        parent_id: str | None = None,
        merge_parent_id: str | None = None,
        timestamp: int | None = None,
    ) -> Commit:
        ts = now_millis() if timestamp is None else timestamp
        snapshot = dict(sorted(files.items()))
        commit_id = compute_commit_id(parent_id, merge_parent_id, message, ts, snapshot)
        return cls(commit_id, parent_id, merge_parent_id, message, ts, snapshot)

    @property
    def parents(self) -> tuple[str, ...]:
        return tuple(p for p in (self.parent_id, self.merge_parent_id) if p)

    @property
    def is_merge(self) -> bool:
        return self.merge_parent_id is not None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def expected_id(self) -> str:
        return compute_commit_id(
            self.parent_id, self.merge_parent_id, self.message, self.timestamp, self.files
        )

    def verify(self) -> None:
        """Raise CorruptError if the id is not the hash of the content."""
        if self.expected_id() != self.id:
            raise CorruptError(f"Commit id {self.id} does not match its content")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "mergeParentId": self.merge_parent_id,
            "message": self.message,
            "timestamp": self.timestamp,
            "files": dict(self.files),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Commit:
        try:
            files = data.get("files") or {}
            if not isinstance(files, dict):
                raise TypeError("files must be an object")
            return cls(
                id=str(data["id"]),
                parent_id=data.get("parentId"),
                merge_parent_id=data.get("mergeParentId"),
                message=str(data.get("message", "")),
                timestamp=int(data["timestamp"]),
                files={str(k): str(v) for k, v in files.items()},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptError(f"Malformed commit: {e}") from e

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes | str) -> Commit:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CorruptError(f"Unparsable commit: {e}") from e
        if not isinstance(data, dict):
            raise CorruptError("Commit document must be an object")
        return cls.from_dict(data)


# -- HEAD --

HEAD_REF_PREFIX = "ref: refs/heads/"


@dataclass(frozen=True)
class SymbolicHead:
    """HEAD names a branch; commits advance that branch."""

    branch: str

    def serialize(self) -> str:
        return f"{HEAD_REF_PREFIX}{self.branch}"


@dataclass(frozen=True)
class DetachedHead:
    """HEAD names a commit directly."""

    commit_id: str

    def serialize(self) -> str:
        return self.commit_id


Head = SymbolicHead | DetachedHead


def parse_head(text: str) -> Head:
    text = text.strip()
    if text.startswith(HEAD_REF_PREFIX):
        branch = text[len(HEAD_REF_PREFIX):].strip()
        if not branch:
            raise CorruptError("HEAD names an empty branch")
        return SymbolicHead(branch)
    if not text:
        raise CorruptError("HEAD is empty")
    return DetachedHead(text)


# -- Merge --


class ConflictType(str, enum.Enum):
    MODIFY_MODIFY = "modify-modify"
    DELETE_MODIFY = "delete-modify"
    ADD_ADD = "add-add"


@dataclass(frozen=True)
class ConflictInfo:
    """A path that could not be merged automatically."""

    path: str
    base: str | None
    local: str | None
    remote: str | None
    conflict_type: ConflictType

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "base": self.base,
            "local": self.local,
            "remote": self.remote,
            "type": self.conflict_type.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConflictInfo:
        return cls(
            path=data["path"],
            base=data.get("base"),
            local=data.get("local"),
            remote=data.get("remote"),
            conflict_type=ConflictType(data["type"]),
        )


@dataclass(frozen=True)
class MergeState:
    """Persisted while a merge awaits conflict resolution."""

    local_commit_id: str
    remote_commit_id: str
    base_commit_id: str
    branch: str
    conflicts: tuple[ConflictInfo, ...]
    message: str

    @property
    def conflict_paths(self) -> list[str]:
        return [c.path for c in self.conflicts]

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "localCommitId": self.local_commit_id,
                "remoteCommitId": self.remote_commit_id,
                "baseCommitId": self.base_commit_id,
                "branch": self.branch,
                "conflicts": [c.to_dict() for c in self.conflicts],
                "message": self.message,
            },
            indent=2,
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> MergeState:
        try:
            data = json.loads(raw)
            return cls(
                local_commit_id=data["localCommitId"],
                remote_commit_id=data["remoteCommitId"],
                base_commit_id=data["baseCommitId"],
                branch=data["branch"],
                conflicts=tuple(ConflictInfo.from_dict(c) for c in data["conflicts"]),
                message=data["message"],
            )
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptError(f"Malformed merge state: {e}") from e

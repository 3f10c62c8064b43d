"""Commit storage, branch refs and HEAD.

Commits are immutable and keyed by id, so storing one twice is a
no-op. Branch refs are the only mutable graph state and only move
through :meth:`RefStore.compare_and_set`.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterable, Protocol

from filelock import FileLock

from .errors import (
    AlreadyExistsError,
    CorruptError,
    InvalidArgumentError,
    IOFailureError,
    NotFoundError,
)
from .kv.base import KVStore
from .model import Commit, Head, parse_head
from .objects import atomic_write

logger = logging.getLogger(__name__)

_BAD_BRANCH_CHARS = re.compile(r"[/\\\s~^:?*\[\x00-\x1f\x7f]")


def validate_branch_name(name: str) -> str:
    """Return ``name`` if usable as a branch, else raise InvalidArgumentError."""
    if not name or not name.strip():
        raise InvalidArgumentError("Branch name cannot be empty")
    if _BAD_BRANCH_CHARS.search(name):
        raise InvalidArgumentError(f"Invalid branch name: {name!r}")
    if name.startswith((".", "-")) or name.endswith(".lock") or name == "HEAD" or ".." in name:
        raise InvalidArgumentError(f"Invalid branch name: {name!r}")
    return name


# -- Commits --


class CommitStore(Protocol):
    def get(self, commit_id: str) -> Commit | None: ...
    def exists(self, commit_id: str) -> bool: ...
    def put(self, commit: Commit) -> None: ...
    def ids(self) -> Iterable[str]: ...


def load_commit(store: CommitStore, commit_id: str) -> Commit:
    commit = store.get(commit_id)
    if commit is None:
        raise NotFoundError(f"Commit not found: {commit_id}")
    return commit


class FileCommitStore:
    """Commits as ``<dir>/<id>.json``."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory)

    def _path(self, commit_id: str) -> Path:
        if not commit_id or "/" in commit_id or "\\" in commit_id or commit_id.startswith("."):
            raise NotFoundError(f"Commit not found: {commit_id}")
        return self.directory / f"{commit_id}.json"

    def get(self, commit_id: str) -> Commit | None:
        try:
            raw = self._path(commit_id).read_bytes()
        except (FileNotFoundError, NotFoundError):
            return None
        except OSError as e:
            raise IOFailureError(f"Could not read commit {commit_id}: {e}") from e
        return Commit.from_json(raw)

    def exists(self, commit_id: str) -> bool:
        try:
            return self._path(commit_id).is_file()
        except NotFoundError:
            return False

    def put(self, commit: Commit) -> None:
        commit.verify()
        path = self._path(commit.id)
        if path.exists():
            return
        try:
            atomic_write(path, commit.to_json())
        except OSError as e:
            raise IOFailureError(f"Could not write commit {commit.id}: {e}") from e

    def ids(self) -> Iterable[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class KVCommitStore:
    """Commits as ``commit/<id>`` entries in a KVStore."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def get(self, commit_id: str) -> Commit | None:
        raw = self.kv.get(f"commit/{commit_id}")
        return Commit.from_json(raw) if raw is not None else None

    def exists(self, commit_id: str) -> bool:
        return f"commit/{commit_id}" in self.kv

    def put(self, commit: Commit) -> None:
        commit.verify()
        self.kv.cas(f"commit/{commit.id}", commit.to_json(), None)

    def ids(self) -> Iterable[str]:
        return sorted(k[len("commit/"):] for k in self.kv.keys_with_prefix("commit/"))


# -- Branch refs --


class RefStore(Protocol):
    def get(self, name: str) -> str | None: ...
    def list(self) -> dict[str, str]: ...
    def compare_and_set(self, name: str, new: str, expected: str | None) -> bool: ...
    def delete(self, name: str) -> None: ...


def create_branch_ref(refs: RefStore, name: str, commit_id: str) -> None:
    validate_branch_name(name)
    if not refs.compare_and_set(name, commit_id, None):
        raise AlreadyExistsError(f"Branch '{name}' already exists")


def rename_branch_ref(refs: RefStore, old: str, new: str) -> str:
    """Move ``old`` to ``new``; returns the commit the branch points at."""
    validate_branch_name(new)
    commit_id = refs.get(old)
    if commit_id is None:
        raise NotFoundError(f"Branch '{old}' not found")
    create_branch_ref(refs, new, commit_id)
    refs.delete(old)
    return commit_id


class FileRefStore:
    """Branch heads as files under ``refs/heads``.

    Updates hold a file lock, so concurrent processes serialise on the
    compare step and the rename keeps readers from seeing a torn file.
    """

    def __init__(self, directory: str | os.PathLike, lock_path: str | os.PathLike) -> None:
        self.directory = Path(directory)
        self.lock = FileLock(str(lock_path), timeout=10)

    def _path(self, name: str) -> Path:
        validate_branch_name(name)
        return self.directory / name

    def get(self, name: str) -> str | None:
        try:
            value = self._path(name).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except InvalidArgumentError:
            return None
        return value or None

    def list(self) -> dict[str, str]:
        if not self.directory.is_dir():
            return {}
        heads = {}
        for path in sorted(self.directory.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                value = path.read_text(encoding="utf-8").strip()
                if value:
                    heads[path.name] = value
        return heads

    def compare_and_set(self, name: str, new: str, expected: str | None) -> bool:
        path = self._path(name)
        with self.lock:
            if self.get(name) != expected:
                return False
            atomic_write(path, (new + "\n").encode("utf-8"))
        logger.debug("Ref %s: %s -> %s", name, expected, new)
        return True

    def delete(self, name: str) -> None:
        with self.lock:
            try:
                self._path(name).unlink()
            except FileNotFoundError:
                raise NotFoundError(f"Branch '{name}' not found") from None


class KVRefStore:
    """Branch heads as ``ref/<name>`` entries, moved with ``KVStore.cas``."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def get(self, name: str) -> str | None:
        raw = self.kv.get(f"ref/{name}")
        return raw.decode("utf-8") if raw else None

    def list(self) -> dict[str, str]:
        return {
            key[len("ref/"):]: value.decode("utf-8")
            for key in sorted(self.kv.keys_with_prefix("ref/"))
            if (value := self.kv.get(key))
        }

    def compare_and_set(self, name: str, new: str, expected: str | None) -> bool:
        validate_branch_name(name)
        old = expected.encode("utf-8") if expected is not None else None
        swapped = self.kv.cas(f"ref/{name}", new.encode("utf-8"), old)
        if swapped:
            logger.debug("Ref %s: %s -> %s", name, expected, new)
        return swapped

    def delete(self, name: str) -> None:
        if f"ref/{name}" not in self.kv:
            raise NotFoundError(f"Branch '{name}' not found")
        self.kv.remove(f"ref/{name}")


# -- HEAD --


def read_head(path: str | os.PathLike) -> Head:
    try:
        return parse_head(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise CorruptError(f"HEAD missing at {path}") from None


def write_head(path: str | os.PathLike, head: Head) -> None:
    atomic_write(Path(path), (head.serialize() + "\n").encode("utf-8"))

"""Server side of the sync protocol.

Each hosted repository is a :class:`~strata.kv.Prefixed` view of one
shared :class:`~strata.kv.KVStore`, holding the same commit, ref and
blob structures the local client keeps on disk. Merge, diff and
ancestry run through the same functions as on the client.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

from .ancestry import can_fast_forward, walk_history
from .errors import (
    AlreadyExistsError,
    ConflictError,
    CorruptError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthorizedError,
)
from .graph import (
    KVCommitStore,
    KVRefStore,
    create_branch_ref,
    load_commit,
    validate_branch_name,
)
from .hashing import hash_bytes, is_valid_hash
from .kv.base import KVStore
from .kv.prefixed import Prefixed
from .merge import MergeAnalysis, MergeStrategy, analyze_merge, merge_commits
from .model import Commit
from .objects import BlobIndex, BlobService, FileSystemStorage, KVStorage, StorageType

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000
MAX_BATCH_OBJECTS = 500

_REPO_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")


# -- Authentication --


@dataclass(frozen=True)
class AuthRequest:
    """Credentials presented by a caller: a token, optionally with an email."""

    token: str
    email: str | None = None


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str


@dataclass(frozen=True)
class Permissions:
    can_read: bool = False
    can_push: bool = False
    can_create_branch: bool = False
    can_delete_branch: bool = False
    can_merge: bool = False

    @classmethod
    def full(cls) -> Permissions:
        return cls(True, True, True, True, True)

    @classmethod
    def read_only(cls) -> Permissions:
        return cls(can_read=True)

    def to_dict(self) -> dict[str, bool]:
        return {
            "canRead": self.can_read,
            "canPush": self.can_push,
            "canCreateBranch": self.can_create_branch,
            "canDeleteBranch": self.can_delete_branch,
            "canMerge": self.can_merge,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Permissions:
        return cls(
            can_read=bool(data.get("canRead")),
            can_push=bool(data.get("canPush")),
            can_create_branch=bool(data.get("canCreateBranch")),
            can_delete_branch=bool(data.get("canDeleteBranch")),
            can_merge=bool(data.get("canMerge")),
        )


class Authenticator(Protocol):
    """Token verification and role lookup live outside the engine."""

    def authenticate(self, request: AuthRequest) -> Principal: ...

    def permissions(self, principal: Principal, repo_key: str) -> Permissions: ...


@dataclass
class _User:
    principal: Principal
    token: str
    default: Permissions
    repos: dict[str, Permissions] = field(default_factory=dict)


class StaticAuthenticator:
    """In-memory token table."""

    def __init__(self) -> None:
        self._by_token: dict[str, _User] = {}

    def add_user(
        self,
        user_id: str,
        email: str,
        token: str,
        permissions: Permissions | None = None,
        repos: Mapping[str, Permissions] | None = None,
    ) -> Principal:
        principal = Principal(user_id, email)
        self._by_token[token] = _User(principal, token, permissions or Permissions.full(), dict(repos or {}))
        return principal

    @classmethod
    def from_file(cls, path: str | Path) -> StaticAuthenticator:
        """Load ``[{"userId", "email", "token", "permissions"?}, ...]``."""
        try:
            entries = json.loads(Path(path).read_text(encoding="utf-8"))
            auth = cls()
            for entry in entries:
                perms = entry.get("permissions")
                auth.add_user(
                    entry["userId"],
                    entry["email"],
                    entry["token"],
                    Permissions.from_dict(perms) if perms is not None else None,
                )
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptError(f"Malformed users file {path}: {e}") from e
        return auth

    def authenticate(self, request: AuthRequest) -> Principal:
        user = self._by_token.get(request.token)
        if user is None or (request.email is not None and request.email != user.principal.email):
            raise UnauthorizedError("Invalid credentials")
        return user.principal

    def permissions(self, principal: Principal, repo_key: str) -> Permissions:
        for user in self._by_token.values():
            if user.principal == principal:
                return user.repos.get(repo_key, user.default)
        return Permissions()


# -- Hosted repositories --


@dataclass(frozen=True)
class RepositoryInfo:
    key: str
    name: str
    default_branch: str
    owner: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "defaultBranch": self.default_branch,
            "owner": self.owner,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RepositoryInfo:
        return cls(data["key"], data["name"], data["defaultBranch"], data["owner"], data["createdAt"])


class HostedRepository:
    """Commit, ref and blob stores of one repository."""

    def __init__(self, info: RepositoryInfo, kv: KVStore, blob_dir: Path | None = None) -> None:
        self.info = info
        self.kv = kv
        self.commits = KVCommitStore(kv)
        self.refs = KVRefStore(kv)
        clients: list = [KVStorage(kv)]
        default = StorageType.KV
        if blob_dir is not None:
            clients.append(FileSystemStorage(blob_dir / info.key))
            default = StorageType.LOCAL
        self.blobs = BlobService(BlobIndex(kv), clients, default)


@dataclass(frozen=True)
class PushResult:
    branch: str
    new_head_commit_id: str | None
    fast_forward: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "newHeadCommitId": self.new_head_commit_id,
            "fastForward": self.fast_forward,
        }


def _decode_blob(blob_hash: str, encoded: str) -> bytes:
    if not is_valid_hash(blob_hash):
        raise InvalidArgumentError(f"Invalid blob hash: {blob_hash!r}")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, TypeError, ValueError):
        raise InvalidArgumentError(f"Blob {blob_hash} is not valid base64") from None
    if hash_bytes(data) != blob_hash:
        raise CorruptError(f"Blob content does not match hash {blob_hash}")
    return data


class RepositoryServer:
    """All remote operations, each authenticated and scoped to a repository key.

    Args:
        kv: Backend shared by every hosted repository.
        authenticator: Verifies credentials and resolves permissions.
        blob_dir: When given, blob bytes go to files under this
            directory instead of the KV store.
    """

    def __init__(
        self,
        kv: KVStore,
        authenticator: Authenticator,
        blob_dir: str | Path | None = None,
    ) -> None:
        self.kv = kv
        self.authenticator = authenticator
        self.blob_dir = Path(blob_dir) if blob_dir is not None else None

    # -- Access --

    def _info(self, key: str) -> RepositoryInfo:
        raw = self.kv.get(f"repo/{key}")
        if raw is None:
            raise NotFoundError(f"Repository '{key}' not found")
        return RepositoryInfo.from_dict(json.loads(raw))

    def _open(self, auth: AuthRequest, key: str, capability: str) -> tuple[Principal, Permissions, HostedRepository]:
        principal = self.authenticator.authenticate(auth)
        info = self._info(key)
        perms = self.authenticator.permissions(principal, key)
        if not getattr(perms, capability):
            raise PermissionDeniedError(f"{principal.email} lacks {capability} on '{key}'")
        repo = HostedRepository(info, Prefixed(self.kv, f"r-{key}"), self.blob_dir)
        return principal, perms, repo

    def create_repository(
        self,
        auth: AuthRequest,
        key: str,
        default_branch: str = "main",
        name: str | None = None,
    ) -> RepositoryInfo:
        principal = self.authenticator.authenticate(auth)
        if not _REPO_KEY_RE.match(key or ""):
            raise InvalidArgumentError(f"Invalid repository key: {key!r}")
        validate_branch_name(default_branch)
        info = RepositoryInfo(key, name or key, default_branch, principal.user_id, time.time())
        if not self.kv.cas(f"repo/{key}", json.dumps(info.to_dict()).encode("utf-8"), None):
            raise AlreadyExistsError(f"Repository '{key}' already exists")
        logger.info("Created repository %s for %s", key, principal.email)
        return info

    # -- Read operations --

    def handshake(self, auth: AuthRequest, key: str) -> dict[str, Any]:
        principal, perms, repo = self._open(auth, key, "can_read")
        return {
            "user": {"userId": principal.user_id, "email": principal.email},
            "repository": repo.info.to_dict(),
            "permissions": perms.to_dict(),
        }

    def get_refs(self, auth: AuthRequest, key: str) -> dict[str, Any]:
        _, _, repo = self._open(auth, key, "can_read")
        return {"defaultBranch": repo.info.default_branch, "branches": repo.refs.list()}

    def get_commit(self, auth: AuthRequest, key: str, commit_id: str) -> Commit:
        _, _, repo = self._open(auth, key, "can_read")
        return load_commit(repo.commits, commit_id)

    def get_commit_history(
        self,
        auth: AuthRequest,
        key: str,
        branch: str | None = None,
        from_commit: str | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> tuple[list[Commit], bool]:
        """First-parent history from a branch head or a commit.

        Raises:
            NotFoundError: The branch or starting commit is unknown.
        """
        _, _, repo = self._open(auth, key, "can_read")
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise InvalidArgumentError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        if from_commit is None:
            branch = branch or repo.info.default_branch
            from_commit = repo.refs.get(branch)
            if from_commit is None:
                if branch == repo.info.default_branch:
                    return [], False
                raise NotFoundError(f"Branch '{branch}' not found")
        elif not repo.commits.exists(from_commit):
            raise NotFoundError(f"Commit not found: {from_commit}")
        return walk_history(repo.commits, from_commit, limit, first_parent=True)

    def get_batch_objects(self, auth: AuthRequest, key: str, hashes: list[str]) -> dict[str, bytes]:
        """Blob bytes by hash; unknown hashes are left out."""
        _, _, repo = self._open(auth, key, "can_read")
        if len(hashes) > MAX_BATCH_OBJECTS:
            raise InvalidArgumentError(f"At most {MAX_BATCH_OBJECTS} objects per request")
        found = {}
        for blob_hash in dict.fromkeys(hashes):
            if is_valid_hash(blob_hash) and repo.blobs.exists(blob_hash):
                found[blob_hash] = repo.blobs.load(blob_hash)
        return found

    # -- Write operations --

    def push(
        self,
        auth: AuthRequest,
        key: str,
        branch: str,
        base_commit_id: str | None,
        commit: Commit,
        blobs: Mapping[str, str],
    ) -> PushResult:
        """Store a commit and its blobs; advance ``branch`` if it fast-forwards.

        A push whose base is not the current head is still stored but
        leaves the branch alone and reports ``fast_forward=False`` with
        the unchanged head. Re-pushing the current head is a no-op.
        """
        _, _, repo = self._open(auth, key, "can_push")
        validate_branch_name(branch)
        commit.verify()
        decoded = {h: _decode_blob(h, data) for h, data in blobs.items()}

        for path, blob_hash in commit.files.items():
            if blob_hash not in decoded and not repo.blobs.exists(blob_hash):
                raise InvalidArgumentError(f"Blob {blob_hash} for {path} is neither stored nor included")
        for parent in commit.parents:
            if not repo.commits.exists(parent):
                raise InvalidArgumentError(f"Unknown parent commit {parent}")

        for data in decoded.values():
            repo.blobs.save(data)
        repo.commits.put(commit)

        current = repo.refs.get(branch)
        if current == commit.id:
            return PushResult(branch, current, True)
        fast_forward = current is None or (
            base_commit_id == current and can_fast_forward(repo.commits, current, commit.id)
        )
        if fast_forward and repo.refs.compare_and_set(branch, commit.id, current):
            logger.info("Push to %s/%s: %s -> %s", key, branch, current and current[:8], commit.short_id)
            return PushResult(branch, commit.id, True)

        head = repo.refs.get(branch)
        logger.info("Push to %s/%s stored %s but did not advance the branch", key, branch, commit.short_id)
        return PushResult(branch, head, False)

    def create_branch(
        self,
        auth: AuthRequest,
        key: str,
        name: str,
        from_commit: str | None = None,
        from_branch: str | None = None,
    ) -> str:
        _, _, repo = self._open(auth, key, "can_create_branch")
        if from_commit is None:
            source = from_branch or repo.info.default_branch
            from_commit = repo.refs.get(source)
            if from_commit is None:
                raise NotFoundError(f"Branch '{source}' not found")
        load_commit(repo.commits, from_commit)
        create_branch_ref(repo.refs, name, from_commit)
        return from_commit

    def delete_branch(self, auth: AuthRequest, key: str, name: str) -> None:
        _, _, repo = self._open(auth, key, "can_delete_branch")
        if name == repo.info.default_branch:
            raise ConflictError(f"Cannot delete the default branch '{name}'")
        repo.refs.delete(name)

    # -- Merging --

    def _branch_head(self, repo: HostedRepository, name: str) -> str:
        head = repo.refs.get(name)
        if head is None:
            raise NotFoundError(f"Branch '{name}' not found")
        return head

    def analyze_merge(self, auth: AuthRequest, key: str, target: str, source: str) -> MergeAnalysis:
        _, _, repo = self._open(auth, key, "can_read")
        return analyze_merge(
            repo.commits, repo.blobs, self._branch_head(repo, target), self._branch_head(repo, source)
        )

    def merge_branches(
        self,
        auth: AuthRequest,
        key: str,
        source: str,
        target: str,
        strategy: str = "merge",
        message: str | None = None,
    ) -> dict[str, Any]:
        """Merge branch ``source`` into ``target`` on the server.

        ``strategy="fast-forward"`` refuses anything but a fast-forward.
        Conflicts are refused; they have to be resolved by a client.
        """
        _, _, repo = self._open(auth, key, "can_merge")
        if strategy not in ("merge", "fast-forward"):
            raise InvalidArgumentError(f"Unknown merge strategy: {strategy!r}")
        target_head = self._branch_head(repo, target)
        source_head = self._branch_head(repo, source)
        if (
            strategy == "fast-forward"
            and target_head != source_head
            and not can_fast_forward(repo.commits, target_head, source_head)
            and not can_fast_forward(repo.commits, source_head, target_head)
        ):
            raise ConflictError(f"'{target}' cannot be fast-forwarded to '{source}'")
        result, _ = merge_commits(
            repo.commits,
            repo.blobs,
            target_head,
            source_head,
            message=message or f"Merge branch '{source}' into '{target}'",
            label=source,
        )
        if result.strategy is MergeStrategy.CONFLICT:
            paths = ", ".join(c.path for c in result.conflicts)
            raise ConflictError(f"Cannot merge '{source}' into '{target}': conflicts in {paths}")
        if result.strategy is not MergeStrategy.UP_TO_DATE:
            if not repo.refs.compare_and_set(target, result.head, target_head):
                raise ConflictError(f"Branch '{target}' was updated concurrently")
            logger.info("Merged %s into %s/%s (%s)", source, key, target, result.strategy.value)
        return {
            "strategy": result.strategy.value,
            "target": target,
            "source": source,
            "newHeadCommitId": result.head,
            "mergeCommitId": result.merge_commit_id,
            "baseCommitId": result.base_commit_id,
            "autoMerged": list(result.auto_merged),
        }

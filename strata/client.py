"""Client side of the sync protocol: transports, remote calls, push/pull."""

from __future__ import annotations

import enum
import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import httpx

from .ancestry import ancestors
from .config import RemoteConfig
from .errors import (
    AlreadyExistsError,
    ConflictError,
    CorruptError,
    InvalidArgumentError,
    IOFailureError,
    NoCommitsYetError,
    NotFoundError,
)
from .graph import create_branch_ref
from .hashing import hash_bytes
from .merge import MergeResult, MergeStrategy
from .model import Commit
from .protocol import (
    API_PREFIX,
    basic_auth_header,
    bearer_auth_header,
    decode_blobs,
    encode_blobs,
    raise_for_error,
)
from .repository import Repository
from .server import PushResult

logger = logging.getLogger(__name__)

BLOB_BATCH_SIZE = 50
HISTORY_PAGE_SIZE = 100
DEFAULT_TIMEOUT = 30.0


class Transport(Protocol):
    def request(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...


class HttpTransport:
    """JSON over HTTP with httpx.

    Args:
        base_url: Server root, e.g. ``https://vcs.example.com``.
        email: Sent with the token as Basic credentials; when None
            the token goes out as a Bearer token.
        token: Access token.
        timeout: Seconds per request.
        client: Optional ready-made httpx client; tests pass a FastAPI
            ``TestClient`` here.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        email: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        auth = basic_auth_header(email, token) if email else bearer_auth_header(token)
        self.headers = {"Authorization": auth, "Accept": "application/json"}
        self.client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def request(self, method, path, body=None, params=None):
        try:
            response = self.client.request(
                method,
                path,
                json=dict(body) if body is not None else None,
                params={k: v for k, v in (params or {}).items() if v is not None},
                headers=self.headers,
            )
        except httpx.TimeoutException as e:
            raise IOFailureError(f"Request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise IOFailureError(f"Cannot reach server: {e}") from e
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = None
        raise_for_error(response.status_code, payload)
        if not isinstance(payload, dict):
            raise CorruptError(f"Expected a JSON object from {method} {path}")
        return payload

    def close(self) -> None:
        self.client.close()


class RemoteClient:
    """Typed calls against one remote repository."""

    def __init__(self, transport: Transport, repo_key: str) -> None:
        self.transport = transport
        self.repo_key = repo_key

    @property
    def _base(self) -> str:
        return f"{API_PREFIX}/{self.repo_key}"

    def create_repository(self, default_branch: str = "main", name: str | None = None) -> dict[str, Any]:
        return self.transport.request(
            "POST", API_PREFIX, {"key": self.repo_key, "defaultBranch": default_branch, "name": name}
        )

    def handshake(self) -> dict[str, Any]:
        return self.transport.request("GET", f"{self._base}/handshake")

    def get_refs(self) -> tuple[str, dict[str, str]]:
        """Default branch name and branch heads."""
        data = self.transport.request("GET", f"{self._base}/refs")
        return data["defaultBranch"], dict(data.get("branches") or {})

    def get_commit(self, commit_id: str) -> Commit:
        commit = Commit.from_dict(self.transport.request("GET", f"{self._base}/commits/{commit_id}"))
        commit.verify()
        return commit

    def get_commit_history(
        self,
        branch: str | None = None,
        from_commit: str | None = None,
        limit: int = HISTORY_PAGE_SIZE,
    ) -> tuple[list[Commit], bool]:
        data = self.transport.request(
            "GET",
            f"{self._base}/commits",
            params={"branch": branch, "fromCommit": from_commit, "limit": limit},
        )
        commits = [Commit.from_dict(c) for c in data.get("commits", [])]
        for commit in commits:
            commit.verify()
        return commits, bool(data.get("hasMore"))

    def get_batch_objects(self, hashes: Iterable[str]) -> dict[str, bytes]:
        """Verified blob bytes; hashes the server lacks are left out."""
        data = self.transport.request("POST", f"{self._base}/objects/batch", {"hashes": list(hashes)})
        blobs = decode_blobs(data.get("objects") or {})
        for blob_hash, content in blobs.items():
            if hash_bytes(content) != blob_hash:
                raise CorruptError(f"Downloaded blob does not match hash {blob_hash}")
        return blobs

    def push(
        self,
        branch: str,
        base_commit_id: str | None,
        commit: Commit,
        blobs: Mapping[str, bytes],
    ) -> PushResult:
        data = self.transport.request(
            "POST",
            f"{self._base}/push",
            {
                "branch": branch,
                "baseCommitId": base_commit_id,
                "newCommit": commit.to_dict(),
                "blobs": encode_blobs(blobs),
            },
        )
        return PushResult(data["branch"], data.get("newHeadCommitId"), bool(data["fastForward"]))

    def create_branch(self, name: str, from_commit: str | None = None, from_branch: str | None = None) -> str:
        data = self.transport.request(
            "POST",
            f"{self._base}/branches",
            {"name": name, "fromCommit": from_commit, "fromBranch": from_branch},
        )
        return data["commitId"]

    def delete_branch(self, name: str) -> None:
        self.transport.request("DELETE", f"{self._base}/branches/{name}")

    def analyze_merge(self, target: str, source: str) -> dict[str, Any]:
        return self.transport.request(
            "GET", f"{self._base}/merge-analysis", params={"target": target, "source": source}
        )

    def merge_branches(
        self, source: str, target: str, strategy: str = "merge", message: str | None = None
    ) -> dict[str, Any]:
        return self.transport.request(
            "POST",
            f"{self._base}/merge",
            {"source": source, "target": target, "strategy": strategy, "message": message},
        )


# -- Sync --


class PullOutcome(str, enum.Enum):
    UP_TO_DATE = "up-to-date"
    FAST_FORWARD = "fast-forward"
    LOCAL_AHEAD = "local-ahead"
    MERGED = "merged"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class PullResult:
    outcome: PullOutcome
    branch: str
    local_commit_id: str | None
    remote_commit_id: str | None
    merge: MergeResult | None = None


def _topological(commits: Mapping[str, Commit], start: str, stop: set[str]) -> list[Commit]:
    """Commits reachable from ``start`` outside ``stop``, parents first."""
    order: list[Commit] = []
    visited: set[str] = set()
    stack: list[tuple[str, bool]] = [(start, False)]
    while stack:
        commit_id, expanded = stack.pop()
        if expanded:
            order.append(commits[commit_id])
            continue
        if commit_id in visited or commit_id in stop:
            continue
        visited.add(commit_id)
        stack.append((commit_id, True))
        for parent in reversed(commits[commit_id].parents):
            if parent not in visited and parent not in stop:
                stack.append((parent, False))
    return order


class SyncService:
    """Moves commits and blobs between a local repository and a remote."""

    def __init__(self, repo: Repository, client: RemoteClient) -> None:
        self.repo = repo
        self.client = client

    def _current_branch(self, branch: str | None) -> str:
        branch = branch or self.repo.current_branch()
        if branch is None:
            raise InvalidArgumentError("HEAD is detached; name a branch")
        return branch

    # -- Fetch --

    def fetch(self, branch: str | None = None) -> dict[str, str]:
        """Download commits and blobs the remote has and we lack.

        Returns the remote branch heads that were fetched.
        """
        _, heads = self.client.get_refs()
        if branch is not None:
            heads = {branch: heads[branch]} if branch in heads else {}
        fetched: dict[str, Commit] = {}
        pending = deque(heads.values())
        while pending:
            commit_id = pending.popleft()
            if commit_id in fetched or self.repo.commits.exists(commit_id):
                continue
            page, has_more = self.client.get_commit_history(from_commit=commit_id, limit=HISTORY_PAGE_SIZE)
            if not page:
                raise NotFoundError(f"Remote is missing commit {commit_id}")
            for commit in page:
                if commit.id in fetched or self.repo.commits.exists(commit.id):
                    break
                fetched[commit.id] = commit
                if commit.merge_parent_id:
                    pending.append(commit.merge_parent_id)
            else:
                if has_more and page[-1].parent_id:
                    pending.append(page[-1].parent_id)

        needed = {h for c in fetched.values() for h in c.files.values()}
        self.download_blobs(needed)
        for commit in reversed(list(fetched.values())):
            self.repo.commits.put(commit)
        logger.info("Fetched %d commit(s) and %d blob(s)", len(fetched), len(needed))
        return heads

    def download_blobs(self, hashes: Iterable[str]) -> int:
        missing = sorted(self.repo.objects.missing(hashes))
        for i in range(0, len(missing), BLOB_BATCH_SIZE):
            batch = missing[i:i + BLOB_BATCH_SIZE]
            blobs = self.client.get_batch_objects(batch)
            absent = [h for h in batch if h not in blobs]
            if absent:
                raise NotFoundError(f"Remote is missing {len(absent)} blob(s), e.g. {absent[0]}")
            for content in blobs.values():
                self.repo.objects.write_bytes(content)
        return len(missing)

    # -- Push --

    def push(self, branch: str | None = None) -> PushResult:
        """Send local commits the remote lacks, oldest first.

        Raises:
            ConflictError: The remote branch has commits we do not; pull first.
        """
        branch = self._current_branch(branch)
        local = self.repo.refs.get(branch)
        if local is None:
            raise NoCommitsYetError(f"Branch '{branch}' has no commits to push")
        _, heads = self.client.get_refs()
        remote = heads.get(branch)
        if remote == local:
            return PushResult(branch, local, True)
        local_history = ancestors(self.repo.commits, local)
        if remote is not None and remote not in local_history:
            raise ConflictError(f"Remote '{branch}' has commits that are not local; pull first")

        on_remote = ancestors(self.repo.commits, remote) if remote else set()
        commits = {c: self.repo.commits.get(c) for c in local_history - on_remote}
        missing = [c for c, commit in commits.items() if commit is None]
        if missing:
            raise NotFoundError(f"Local commit {missing[0]} is missing")

        sent: set[str] = set()
        base = remote
        result = PushResult(branch, remote, False)
        for commit in _topological(commits, local, on_remote):  # type: ignore[arg-type]
            parent_files: set[str] = set()
            for parent in commit.parents:
                parent_commit = commits.get(parent) or self.repo.commits.get(parent)
                if parent_commit is not None:
                    parent_files.update(parent_commit.files.values())
            needed = {h for h in commit.files.values() if h not in parent_files and h not in sent}
            blobs = {h: self.repo.objects.read(h) for h in needed}
            result = self.client.push(branch, base, commit, blobs)
            sent.update(needed)
            if result.fast_forward:
                base = result.new_head_commit_id
        if result.new_head_commit_id != local:
            raise ConflictError(f"Push to '{branch}' was not applied; the remote moved. Pull first")
        logger.info("Pushed %s to %s", branch, local[:8])
        return result

    # -- Pull --

    def pull(self, branch: str | None = None) -> PullResult:
        branch = self._current_branch(branch)
        heads = self.fetch(branch)
        remote = heads.get(branch)
        if remote is None:
            raise NotFoundError(f"Remote branch '{branch}' not found")
        local = self.repo.current_head()
        if local == remote:
            return PullResult(PullOutcome.UP_TO_DATE, branch, local, remote)
        if local is not None and remote in ancestors(self.repo.commits, local):
            return PullResult(PullOutcome.LOCAL_AHEAD, branch, local, remote)

        result = self.repo.merges.merge(
            remote,
            branch,
            message=f"Merge remote-tracking branch 'remote/{branch}'",
            label=f"remote/{branch}",
        )
        outcome = {
            MergeStrategy.UP_TO_DATE: PullOutcome.UP_TO_DATE,
            MergeStrategy.FAST_FORWARD: PullOutcome.FAST_FORWARD,
            MergeStrategy.THREE_WAY: PullOutcome.MERGED,
            MergeStrategy.CONFLICT: PullOutcome.CONFLICT,
        }[result.strategy]
        return PullResult(outcome, branch, local, remote, result)

    # -- Clone --

    @classmethod
    def clone(
        cls,
        client: RemoteClient,
        target: str | os.PathLike,
        base_url: str,
        branch: str | None = None,
    ) -> Repository:
        """Create a repository at ``target`` holding every remote branch."""
        target = Path(target)
        if target.exists() and (not target.is_dir() or any(target.iterdir())):
            raise AlreadyExistsError(f"Destination '{target}' already exists and is not empty")
        default_branch, heads = client.get_refs()
        checkout = branch or default_branch
        if branch is not None and branch not in heads:
            raise NotFoundError(f"Remote branch '{branch}' not found")
        target.mkdir(parents=True, exist_ok=True)
        repo = Repository.init(target, default_branch=checkout)
        RemoteConfig(base_url, client.repo_key).save(target)
        sync = cls(repo, client)
        sync.fetch()
        for name, commit_id in heads.items():
            create_branch_ref(repo.refs, name, commit_id)
        if checkout in heads:
            repo.checkout_branch(checkout, force=True)
        logger.info("Cloned %s into %s", client.repo_key, target)
        return repo

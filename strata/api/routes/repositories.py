"""Repository API routes.

Every route authenticates through :func:`get_auth` and hands the work
to :class:`RepositoryServer`; errors it raises are turned into JSON
bodies by the handlers in :mod:`strata.api.app`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from strata.api.deps import get_auth, get_server
from strata.api.schemas import (
    BatchObjectsRequest,
    CreateBranchRequest,
    CreateRepositoryRequest,
    MergeRequest,
    PushRequest,
)
from strata.errors import CorruptError, InvalidArgumentError
from strata.model import Commit
from strata.protocol import API_PREFIX, encode_blobs
from strata.server import AuthRequest, RepositoryServer

router = APIRouter(prefix=API_PREFIX, tags=["repositories"])


@router.post("", status_code=201)
def create_repository(
    body: CreateRepositoryRequest,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    info = server.create_repository(
        auth, body.key, default_branch=body.default_branch or "main", name=body.name or None
    )
    return info.to_dict()


@router.get("/{key}/handshake")
def handshake(
    key: str,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return server.handshake(auth, key)


@router.get("/{key}/refs")
def get_refs(
    key: str,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return server.get_refs(auth, key)


@router.get("/{key}/commits/{commit_id}")
def get_commit(
    key: str,
    commit_id: str,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return server.get_commit(auth, key, commit_id).to_dict()


@router.get("/{key}/commits")
def get_commit_history(
    key: str,
    branch: str | None = None,
    from_commit: str | None = Query(None, alias="fromCommit"),
    limit: int = 100,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    commits, has_more = server.get_commit_history(
        auth, key, branch=branch or None, from_commit=from_commit or None, limit=limit
    )
    return {"commits": [c.to_dict() for c in commits], "hasMore": has_more}


@router.post("/{key}/objects/batch")
def get_batch_objects(
    key: str,
    body: BatchObjectsRequest,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return {"objects": encode_blobs(server.get_batch_objects(auth, key, body.hashes))}


@router.post("/{key}/push")
def push(
    key: str,
    body: PushRequest,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    try:
        commit = Commit.from_dict(body.new_commit)
    except CorruptError as e:
        raise InvalidArgumentError(e.message) from e
    result = server.push(auth, key, body.branch, body.base_commit_id or None, commit, body.blobs)
    return result.to_dict()


@router.post("/{key}/branches")
def create_branch(
    key: str,
    body: CreateBranchRequest,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    commit_id = server.create_branch(
        auth,
        key,
        body.name,
        from_commit=body.from_commit or None,
        from_branch=body.from_branch or None,
    )
    return {"name": body.name, "commitId": commit_id}


@router.delete("/{key}/branches/{name}")
def delete_branch(
    key: str,
    name: str,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    server.delete_branch(auth, key, name)
    return {"deleted": name}


@router.get("/{key}/merge-analysis")
def analyze_merge(
    key: str,
    target: str,
    source: str,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return server.analyze_merge(auth, key, target, source).to_dict()


@router.post("/{key}/merge")
def merge_branches(
    key: str,
    body: MergeRequest,
    server: RepositoryServer = Depends(get_server),  # noqa: B008
    auth: AuthRequest = Depends(get_auth),  # noqa: B008
):
    return server.merge_branches(
        auth,
        key,
        body.source,
        body.target,
        strategy=body.strategy or "merge",
        message=body.message or None,
    )

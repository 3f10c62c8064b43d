"""Request bodies of the sync API.

Wire names are camelCase; the models accept either form.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateRepositoryRequest(WireModel):
    key: str
    default_branch: str = Field("main", alias="defaultBranch")
    name: str | None = None


class BatchObjectsRequest(WireModel):
    hashes: list[str]


class PushRequest(WireModel):
    branch: str
    base_commit_id: str | None = Field(None, alias="baseCommitId")
    new_commit: dict[str, Any] = Field(..., alias="newCommit")
    blobs: dict[str, str] = {}


class CreateBranchRequest(WireModel):
    name: str
    from_commit: str | None = Field(None, alias="fromCommit")
    from_branch: str | None = Field(None, alias="fromBranch")


class MergeRequest(WireModel):
    source: str
    target: str
    strategy: str = "merge"
    message: str | None = None

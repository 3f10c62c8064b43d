"""strata: content-addressed version control with a sync protocol."""

from .errors import (
    AlreadyExistsError,
    ConflictError,
    ConflictsRemainError,
    CorruptError,
    EmptyCommitError,
    InvalidArgumentError,
    IOFailureError,
    NoCommitsYetError,
    NoCommonAncestorError,
    NotFoundError,
    PermissionDeniedError,
    RepositoryNotFoundError,
    StrataError,
    UnauthorizedError,
)
from .merge import MergeResult, MergeStrategy, analyze_merge, classify, merge_contents
from .model import Commit, ConflictInfo, ConflictType, DetachedHead, MergeState, SymbolicHead
from .repository import Repository, find_repository_root

__all__ = [
    "AlreadyExistsError",
    "Commit",
    "ConflictError",
    "ConflictInfo",
    "ConflictType",
    "ConflictsRemainError",
    "CorruptError",
    "DetachedHead",
    "EmptyCommitError",
    "IOFailureError",
    "InvalidArgumentError",
    "MergeResult",
    "MergeState",
    "MergeStrategy",
    "NoCommitsYetError",
    "NoCommonAncestorError",
    "NotFoundError",
    "PermissionDeniedError",
    "Repository",
    "RepositoryNotFoundError",
    "StrataError",
    "SymbolicHead",
    "UnauthorizedError",
    "analyze_merge",
    "classify",
    "find_repository_root",
    "merge_contents",
]

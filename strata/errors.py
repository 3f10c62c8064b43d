"""strata error types.

Every failure raised by the library is a :class:`StrataError`. The
``code`` attribute is stable and travels over the wire so a remote
failure can be re-raised as the same class on the client.
"""


class StrataError(Exception):
    """Base class for all strata failures."""

    code = "internal"
    retryable = False

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class NotFoundError(StrataError):
    """A blob, commit, branch, path or repository does not exist."""

    code = "not_found"


class RepositoryNotFoundError(NotFoundError):
    """No repository metadata directory in the path or any parent."""

    code = "repository_not_found"


class AlreadyExistsError(StrataError):
    """A branch or repository with that name already exists."""

    code = "already_exists"


class InvalidArgumentError(StrataError):
    """Malformed input: bad names, bad payloads, bad ids."""

    code = "invalid_argument"


class EmptyCommitError(InvalidArgumentError):
    """Raised when committing with an empty staging index."""

    code = "empty_commit"


class NoCommitsYetError(InvalidArgumentError):
    """The operation needs a HEAD commit but the branch is unborn."""

    code = "no_commits"


class ConflictError(StrataError):
    """The operation lost a race or conflicts with current state.

    Covers concurrent head updates, a merge already in progress and
    checkouts over uncommitted changes.
    """

    code = "conflict"


class ConflictsRemainError(ConflictError):
    """Raised by ``continue_merge`` while conflict markers remain.

    Attributes:
        paths: The paths still containing markers.
    """

    code = "conflicts_remain"

    def __init__(self, paths: list[str] | None = None, message: str = "") -> None:
        self.paths = sorted(paths or [])
        if not message:
            message = "Conflicts remain in: " + ", ".join(self.paths)
        super().__init__(message)


class NoCommonAncestorError(ConflictError):
    """The two histories share no commit."""

    code = "no_common_ancestor"


class UnauthorizedError(StrataError):
    """Credentials are missing or invalid."""

    code = "unauthorized"


class PermissionDeniedError(StrataError):
    """The caller is authenticated but lacks the capability."""

    code = "permission_denied"


class IOFailureError(StrataError):
    """Filesystem or transport failure. Safe to retry."""

    code = "io_failure"
    retryable = True


class CorruptError(StrataError):
    """Stored data does not match its hash or cannot be parsed."""

    code = "corrupt"


ERRORS_BY_CODE: dict[str, type[StrataError]] = {
    cls.code: cls
    for cls in (
        StrataError,
        NotFoundError,
        RepositoryNotFoundError,
        AlreadyExistsError,
        InvalidArgumentError,
        EmptyCommitError,
        NoCommitsYetError,
        ConflictError,
        ConflictsRemainError,
        NoCommonAncestorError,
        UnauthorizedError,
        PermissionDeniedError,
        IOFailureError,
        CorruptError,
    )
}


def error_from_code(code: str, message: str) -> StrataError:
    """Rebuild a typed error from its wire code."""
    cls = ERRORS_BY_CODE.get(code, StrataError)
    if cls is ConflictsRemainError:
        return ConflictsRemainError(message=message)
    return cls(message)

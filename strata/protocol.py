"""Wire conventions shared by the API in :mod:`strata.api` and the client.

Routes live under ``/api/repositories``. Bodies are JSON; blob bytes
travel base64-encoded. Failures come back as
``{"error": <code>, "message": <text>}`` with the status below, and
:func:`raise_for_error` turns that body back into the same exception
class on the client.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping

from .errors import (
    AlreadyExistsError,
    ConflictError,
    CorruptError,
    InvalidArgumentError,
    IOFailureError,
    NotFoundError,
    PermissionDeniedError,
    StrataError,
    UnauthorizedError,
    error_from_code,
)
from .server import AuthRequest

API_PREFIX = "/api/repositories"

STATUS_BY_ERROR: list[tuple[type[StrataError], int]] = [
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ConflictError, 409),
    (InvalidArgumentError, 400),
    (UnauthorizedError, 401),
    (PermissionDeniedError, 403),
    (CorruptError, 422),
    (IOFailureError, 503),
]


def status_for(error: StrataError) -> int:
    for cls, status in STATUS_BY_ERROR:
        if isinstance(error, cls):
            return status
    return 500


def error_body(error: StrataError) -> dict[str, str]:
    return {"error": error.code, "message": error.message}


def raise_for_error(status: int, body: Any) -> None:
    """Raise the typed error a non-2xx response describes."""
    if 200 <= status < 300:
        return
    if isinstance(body, dict) and "error" in body:
        raise error_from_code(str(body["error"]), str(body.get("message", "")))
    if status >= 500:
        raise IOFailureError(f"Server error: HTTP {status}")
    raise StrataError(f"Unexpected response: HTTP {status}")


# -- Credentials in headers --


def basic_auth_header(email: str, token: str) -> str:
    raw = f"{email}:{token}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def bearer_auth_header(token: str) -> str:
    return f"Bearer {token}"


def parse_auth_header(value: str | None) -> AuthRequest:
    if not value:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, credentials = value.partition(" ")
    scheme = scheme.lower()
    if scheme == "bearer" and credentials.strip():
        return AuthRequest(token=credentials.strip())
    if scheme == "basic":
        try:
            decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise UnauthorizedError("Malformed Basic credentials") from None
        email, sep, token = decoded.partition(":")
        if sep and token:
            return AuthRequest(token=token, email=email)
    raise UnauthorizedError("Unsupported Authorization header")


# -- Body helpers --


def encode_blobs(blobs: Mapping[str, bytes]) -> dict[str, str]:
    return {h: base64.b64encode(data).decode("ascii") for h, data in blobs.items()}


def decode_blobs(encoded: Mapping[str, str]) -> dict[str, bytes]:
    try:
        return {h: base64.b64decode(data, validate=True) for h, data in encoded.items()}
    except (binascii.Error, TypeError, ValueError) as e:
        raise CorruptError(f"Malformed object payload: {e}") from e


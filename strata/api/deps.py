from __future__ import annotations

from fastapi import Header, Request

from strata.protocol import parse_auth_header
from strata.server import AuthRequest, RepositoryServer


def get_server(request: Request) -> RepositoryServer:
    return request.app.state.server


def get_auth(authorization: str | None = Header(None)) -> AuthRequest:
    """Credentials from the Authorization header; UnauthorizedError when absent or malformed."""
    return parse_auth_header(authorization)

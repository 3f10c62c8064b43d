from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from strata.api.routes.repositories import router as repositories_router
from strata.errors import InvalidArgumentError, NotFoundError, StrataError
from strata.protocol import error_body, status_for
from strata.server import RepositoryServer

logger = logging.getLogger(__name__)


def _error_response(error: StrataError) -> JSONResponse:
    return JSONResponse(status_code=status_for(error), content=error_body(error))


def create_app(server: RepositoryServer) -> FastAPI:
    """The sync API serving ``server``.

    Failures always come back as ``{"error": <code>, "message": <text>}``
    so clients can rebuild the typed exception.
    """
    app = FastAPI(title="strata sync server", version="0.1.0")
    app.state.server = server
    app.include_router(repositories_router)

    @app.exception_handler(StrataError)
    async def strata_error(request: Request, exc: StrataError):
        logger.debug("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
        return _error_response(InvalidArgumentError(f"Invalid request: {fields}"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(NotFoundError(f"No route for {request.method} {request.url.path}"))
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "invalid_argument", "message": str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal", "message": "Internal server error"})

    return app

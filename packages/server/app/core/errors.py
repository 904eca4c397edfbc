"""
Error taxonomy and the handlers that turn it into ``{"error": ...}`` bodies.

- Unauthorized       -> 401, no valid identity on the request
- InternalError      -> 500, carries the underlying cause
  - ProvisioningFailure  a write to organizations/members failed
  - LookupAmbiguity      more than one active membership matched an email
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

log = structlog.get_logger()


class Unauthorized(Exception):
    """No valid authenticated identity accompanies the request."""

    def __init__(self, reason: str = "missing credentials"):
        super().__init__(reason)
        self.reason = reason


class InternalError(Exception):
    """A failure the caller cannot fix. ``public_message`` is safe to return."""

    public_message = "Internal server error"

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ProvisioningFailure(InternalError):
    public_message = "Failed to provision membership"


class LookupAmbiguity(InternalError):
    public_message = "Internal server error"


async def _unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    log.info("auth.unauthorized", path=request.url.path, reason=exc.reason)
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


async def _internal_error_handler(request: Request, exc: InternalError) -> JSONResponse:
    log.error(
        "request.internal_error",
        path=request.url.path,
        error=str(exc),
        cause=repr(exc.cause) if exc.cause else None,
    )
    return JSONResponse(status_code=500, content={"error": exc.public_message})


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request data", "details": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Unauthorized, _unauthorized_handler)
    app.add_exception_handler(InternalError, _internal_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

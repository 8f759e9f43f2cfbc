import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from relaykit.core.exceptions import (
    IdempotencyInFlight,
    RateLimitExceeded,
    RelayKitError,
)
from relaykit.schemas.response import ErrorDetail, ErrorResponse

log = logging.getLogger("relaykit.api")


def _error_body(code: str, message, **extra):
    """Common error envelope; request_id is fresh for every response."""
    error = ErrorDetail(code=code, message=jsonable_encoder(message), **jsonable_encoder(extra))
    return jsonable_encoder(ErrorResponse(error=error))


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    body = _error_body("http_error", exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    body = _error_body("validation_error", "Invalid input data", details=exc.errors())
    return JSONResponse(status_code=422, content=body)


def relaykit_exception_handler(request: Request, exc: RelayKitError):
    """Renders the delivery/request-safety taxonomy with its HTTP status and retry hints."""
    headers = {"Cache-Control": "no-store"}
    extra = {}

    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
        extra["retry_after"] = exc.retry_after
    elif isinstance(exc, IdempotencyInFlight):
        headers["Retry-After"] = str(exc.retry_after)
        extra["retry_after"] = exc.retry_after

    if exc.status_code >= 500:
        log.error(f"{exc.code} on path {request.url.path}: {exc.message}")
    else:
        log.warning(f"{exc.code} on path {request.url.path}: {exc.message}")

    body = _error_body(exc.code, exc.message, **extra)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.exception(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    body = _error_body("server_error", "Internal Server Error")
    return JSONResponse(status_code=500, content=body)


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RelayKitError, relaykit_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app

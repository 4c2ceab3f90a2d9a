"""Error envelope and exception handlers for the vendoreval API.

Every error response has the same JSON shape:

    {"code": str, "message": str, "details": dict | None, "request_id": str}

Engine errors map to HTTP status by type:
- ValidationError: 422
- LockedError: 423
- WeightMismatchError, ConcurrencyConflictError, InvalidStateTransitionError: 409
- NotFoundError: 404
- PermissionDeniedError: 403
- InsufficientDataError: 422
- OperationCancelledError: 499
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from vendoreval.errors import (
    ConcurrencyConflictError,
    EngineError,
    InsufficientDataError,
    InvalidStateTransitionError,
    LockedError,
    NotFoundError,
    OperationCancelledError,
    PermissionDeniedError,
    ValidationError,
    WeightMismatchError,
)

logger = logging.getLogger(__name__)

ENGINE_ERROR_STATUS: tuple[tuple[type[EngineError], int], ...] = (
    (WeightMismatchError, 409),
    (ConcurrencyConflictError, 409),
    (InvalidStateTransitionError, 409),
    (LockedError, 423),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (InsufficientDataError, 422),
    (ValidationError, 422),
    (OperationCancelledError, 499),
)

HTTP_STATUS_TO_CODE: dict[int, str] = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
    423: "LOCKED",
    500: "INTERNAL_ERROR",
}


class ErrorResponse(BaseModel):
    """Error envelope schema."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


def _request_id(request: Request) -> str:
    request_id: str | None = getattr(request.state, "request_id", None)
    if request_id is not None:
        return str(request_id)
    header_id = request.headers.get("X-Request-Id")
    if header_id:
        return header_id
    return str(uuid.uuid4())


def make_error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build the error envelope and echo the request id header."""
    request_id = _request_id(request)
    body = ErrorResponse(code=code, message=message, details=details, request_id=request_id)
    response = JSONResponse(status_code=http_status, content=body.model_dump(mode="json"))
    response.headers["X-Request-Id"] = request_id
    return response


def status_for(exc: EngineError) -> int:
    for error_type, status in ENGINE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


async def engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map an EngineError to its HTTP status, keeping its code, message and details."""
    assert isinstance(exc, EngineError)
    status = status_for(exc)
    if status >= 409:
        logger.info("%s rejected: %s", request.url.path, exc.message)
    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=status,
        details=exc.details or None,
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)
    return make_error_response(
        request,
        code=HTTP_STATUS_TO_CODE.get(exc.status_code, "ERROR"),
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        http_status=exc.status_code,
    )


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Report request body and query errors by field without echoing raw input."""
    assert isinstance(exc, RequestValidationError)
    fields: list[dict[str, Any]] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append(
            {
                "field": ".".join(loc) if loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )
    return make_error_response(
        request,
        code="REQUEST_VALIDATION_FAILED",
        message="Request validation failed",
        http_status=422,
        details={"errors": fields} if fields else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fail closed with a generic 500; the exception is logged, never returned."""
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
    )

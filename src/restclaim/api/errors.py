"""restclaim API error handling.

Every handler answers with the same JSON envelope:
- code: machine-readable error code
- message: human-readable message
- details: optional context, never request values or secrets
- request_id: correlation ID, also sent as the X-Request-Id header

A test query whose remote call fails is not an error at this layer; the route
reports it in the response body instead.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from restclaim.api.middleware.request_id import REQUEST_ID_HEADER

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "REQUEST_VALIDATION_FAILED",
    500: "INTERNAL_ERROR",
}


class ErrorResponse(BaseModel):
    """Error envelope schema."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


def get_request_id(request: Request) -> str:
    """Return the ID set by RequestIdMiddleware, falling back to the header."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


def make_error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build the error envelope response, echoing the request ID."""
    request_id = get_request_id(request)
    body = ErrorResponse(code=code, message=message, details=details, request_id=request_id)
    return JSONResponse(
        status_code=http_status,
        content=body.model_dump(),
        headers={REQUEST_ID_HEADER: request_id},
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unknown routes, wrong methods and explicit HTTPExceptions."""
    assert isinstance(exc, HTTPException)

    return make_error_response(
        request,
        code=_STATUS_CODES.get(exc.status_code, "ERROR"),
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        http_status=exc.status_code,
    )


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Malformed request bodies.

    Only field locations and messages are reported; a test query body carries
    credentials, so submitted values are never echoed.
    """
    assert isinstance(exc, RequestValidationError)

    fields = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            or "request",
            "message": error.get("msg", "Validation error"),
        }
        for error in exc.errors()
    ]

    return make_error_response(
        request,
        code=_STATUS_CODES[422],
        message="Request validation failed",
        http_status=422,
        details={"errors": fields} if fields else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled: logged with its traceback, reported as a bare 500."""
    logger.exception(
        "Unhandled %s while serving %s (request %s)",
        type(exc).__name__,
        request.url.path,
        get_request_id(request),
    )

    return make_error_response(
        request,
        code=_STATUS_CODES[500],
        message="An internal error occurred",
        http_status=500,
    )

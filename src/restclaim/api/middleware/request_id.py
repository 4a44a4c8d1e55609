"""Correlation ID middleware for the restclaim API.

A test query fans out into fetcher log lines on worker threads; the
correlation ID lets an operator match them to the request. Incoming IDs are
echoed only when they are safe to write into logs and response headers.
"""

import logging
import re
import uuid
from collections.abc import Awaitable, Callable
from typing import Final

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER: Final[str] = "X-Request-Id"
MAX_REQUEST_ID_LENGTH: Final[int] = 128

_SAFE_REQUEST_ID = re.compile(r"[A-Za-z0-9._:@/+=-]+")


def resolve_request_id(incoming: str | None) -> str:
    """Return the caller's correlation ID if acceptable, else a fresh uuid4.

    An incoming ID is accepted after trimming when it is non-empty, at most
    MAX_REQUEST_ID_LENGTH characters and made only of URL-safe token
    characters. Anything else could forge log lines or bloat headers.
    """
    candidate = (incoming or "").strip()
    if len(candidate) <= MAX_REQUEST_ID_LENGTH and _SAFE_REQUEST_ID.fullmatch(candidate):
        return candidate
    if candidate:
        logger.debug("Rejected incoming %s of length %d", REQUEST_ID_HEADER, len(candidate))
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Stores the correlation ID on request.state.request_id and echoes it back."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

"""Liveness route for the restclaim API.

Besides the version, the response reports whether the expression sandbox
wired into the app still evaluates a constant expression. A broken sandbox
turns every configured query into "no query string", so it is surfaced here
as a degraded status rather than discovered through missing claims.
"""

from datetime import UTC, datetime
from typing import Final, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(tags=["Health"])

RESTCLAIM_VERSION: Final[str] = "0.1.0"

SANDBOX_CHECK_EXPRESSION: Final[str] = '"?check=" + "ok"'
SANDBOX_CHECK_RESULT: Final[str] = "?check=ok"


class HealthResponse(BaseModel):
    """Liveness payload."""

    status: Literal["ok", "degraded"]
    time: str
    version: str
    sandbox: Literal["ok", "failing"]


@router.get("/health", response_model=HealthResponse)
def get_health(request: Request) -> HealthResponse:
    """Report liveness; always 200, with status "degraded" if the sandbox fails."""
    sandbox = request.app.state.sandbox
    sandbox_ok = sandbox.evaluate(SANDBOX_CHECK_EXPRESSION, {}) == SANDBOX_CHECK_RESULT
    return HealthResponse(
        status="ok" if sandbox_ok else "degraded",
        time=datetime.now(UTC).isoformat(),
        version=RESTCLAIM_VERSION,
        sandbox="ok" if sandbox_ok else "failing",
    )

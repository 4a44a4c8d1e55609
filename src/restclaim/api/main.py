"""restclaim FastAPI application factory.

This module provides the create_app() factory for bootstrapping the
administrative API (health and test query).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from restclaim.api.errors import (
    generic_exception_handler,
    http_exception_handler,
    request_validation_error_handler,
)
from restclaim.api.middleware.request_id import RequestIdMiddleware
from restclaim.api.routes.health import RESTCLAIM_VERSION
from restclaim.api.routes.health import router as health_router
from restclaim.api.routes.test_query import router as test_query_router
from restclaim.services.enrichment.fetcher import SourceFetcher
from restclaim.services.enrichment.models import ExpressionEvaluator
from restclaim.services.enrichment.orchestrator import EndpointFetcher
from restclaim.services.enrichment.sandbox import SafeExpressionSandbox
from restclaim.settings import load_engine_settings


def create_app(
    fetcher: EndpointFetcher | None = None,
    sandbox: ExpressionEvaluator | None = None,
) -> FastAPI:
    """Create and configure the restclaim FastAPI application.

    This factory:
    - Creates a FastAPI app with restclaim metadata
    - Registers the request ID middleware and the exception handlers
    - Mounts the health router and the /v1 test query router

    Args:
        fetcher: Optional fetcher for testing. If None, a SourceFetcher is
            built from environment settings and closed on shutdown.
        sandbox: Optional expression evaluator. If None, uses
            SafeExpressionSandbox.

    Returns:
        Configured FastAPI application instance.

    Raises:
        EngineSettingsError: If no fetcher is given and the environment
            settings are invalid.
    """
    owned_fetcher: SourceFetcher | None = None
    if fetcher is None:
        owned_fetcher = SourceFetcher(settings=load_engine_settings())
        fetcher = owned_fetcher

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        if owned_fetcher is not None:
            owned_fetcher.close()

    app = FastAPI(
        title="restclaim API",
        description="REST claim enrichment engine - administrative API",
        version=RESTCLAIM_VERSION,
        lifespan=lifespan,
    )

    app.state.fetcher = fetcher
    app.state.sandbox = sandbox or SafeExpressionSandbox()

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(test_query_router)

    return app

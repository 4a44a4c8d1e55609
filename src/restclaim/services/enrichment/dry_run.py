"""Synchronous test query for one endpoint definition.

Lets an administrator validate an endpoint before saving it: the query
expression is evaluated with the supplied test variables, the endpoint is
called live, and both the raw response and the mapped claims are returned.
Nothing is cached and no identity is involved.
"""

from __future__ import annotations

import logging
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

from restclaim.services.enrichment.config_parser import (
    DEFAULT_QUERY_SCRIPT,
    parse_auth_type,
    parse_mapping_rules,
)
from restclaim.services.enrichment.extractor import extract
from restclaim.services.enrichment.models import (
    ClaimSet,
    EndpointDefinition,
    ExpressionEvaluator,
)
from restclaim.services.enrichment.orchestrator import EndpointFetcher

logger = logging.getLogger(__name__)

TEST_ENDPOINT_INDEX: Final[int] = 1
EMPTY_URL_ERROR: Final[str] = "URL must not be empty"
NO_RESPONSE_ERROR: Final[str] = (
    "REST API call returned no response (check URL, auth, and server logs)"
)


class TestQueryRequest(BaseModel):
    """Endpoint definition plus test variable values."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = None
    auth_type: str | None = Field(default=None, alias="authType")
    auth_value: str | None = Field(default=None, alias="authValue", repr=False)
    query_params: list[str] | None = Field(default=None, alias="queryParams")
    query_script: str | None = Field(default=None, alias="queryScript")
    mapping: str | None = None
    test_vars: dict[str, str] | None = Field(default=None, alias="testVars")


class TestQueryResponse(BaseModel):
    """Outcome of a test query; error is None on success."""

    model_config = ConfigDict(populate_by_name=True)

    query_string: str | None = Field(default=None, alias="queryString")
    raw_response: str | None = Field(default=None, alias="rawResponse")
    mapped_claims: ClaimSet | None = Field(default=None, alias="mappedClaims")
    error: str | None = None

    @property
    def is_invalid_request(self) -> bool:
        """True if the request was rejected before any call was made."""
        return self.error == EMPTY_URL_ERROR


def build_test_endpoint(request: TestQueryRequest) -> EndpointDefinition:
    """Build the endpoint definition described by a test request."""
    variable_names: list[str] = []
    for name in request.query_params or []:
        if name and name.strip() and name.strip() not in variable_names:
            variable_names.append(name.strip())

    return EndpointDefinition(
        index=TEST_ENDPOINT_INDEX,
        url=(request.url or "").strip(),
        auth_type=parse_auth_type(request.auth_type, endpoint_index=TEST_ENDPOINT_INDEX),
        auth_value=request.auth_value or "",
        variable_names=tuple(variable_names),
        query_expression=(
            request.query_script if request.query_script is not None else DEFAULT_QUERY_SCRIPT
        ),
        mapping_rules=tuple(parse_mapping_rules(request.mapping)),
    )


def run_test_query(
    request: TestQueryRequest,
    *,
    fetcher: EndpointFetcher,
    sandbox: ExpressionEvaluator,
) -> TestQueryResponse:
    """Run a test query.

    Args:
        request: Endpoint definition and test variables.
        fetcher: Performs the live call.
        sandbox: Evaluates the query expression.

    Returns:
        TestQueryResponse. Never raises; failures are reported in error.
    """
    response = TestQueryResponse()
    if request.url is None or not request.url.strip():
        response.error = EMPTY_URL_ERROR
        return response

    try:
        endpoint = build_test_endpoint(request)
        response.query_string = sandbox.evaluate(endpoint.query_expression, request.test_vars or {})

        raw = fetcher.fetch(endpoint, response.query_string)
        response.raw_response = raw
        if raw is None:
            response.error = NO_RESPONSE_ERROR
            return response

        response.mapped_claims = extract(raw, endpoint.mapping_rules)
    except Exception as exc:
        logger.error("Test query failed", exc_info=True)
        response.error = f"Internal error: {exc}"

    return response

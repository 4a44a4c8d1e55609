"""Tests for restclaim API health endpoint."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from restclaim.api.main import create_app


class _NullFetcher:
    def fetch(self, endpoint: object, query_string: str | None) -> str | None:
        return None


@pytest.fixture
def client() -> TestClient:
    """Create a test client for the restclaim API."""
    app = create_app(fetcher=_NullFetcher())
    return TestClient(app)


def test_health_returns_200(client: TestClient) -> None:
    """GET /health returns 200 OK."""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_status_and_version(client: TestClient) -> None:
    """GET /health returns status 'ok' and the package version."""
    data = client.get("/health").json()

    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"


def test_health_time_is_iso8601(client: TestClient) -> None:
    """GET /health returns time in ISO-8601 format."""
    data = client.get("/health").json()

    datetime.fromisoformat(data["time"])


def test_health_echoes_provided_request_id(client: TestClient) -> None:
    """GET /health with X-Request-Id header echoes it back."""
    response = client.get("/health", headers={"X-Request-Id": "test-request-id-12345"})

    assert response.headers["X-Request-Id"] == "test-request-id-12345"


@pytest.mark.parametrize("header", [None, "", "   "])
def test_health_generates_request_id(client: TestClient, header: str | None) -> None:
    """GET /health generates a UUID request ID when none usable is provided."""
    headers = {} if header is None else {"X-Request-Id": header}
    request_id = client.get("/health", headers=headers).headers["X-Request-Id"]

    assert len(request_id) == 36
    assert request_id.count("-") == 4


def test_health_reports_working_sandbox(client: TestClient) -> None:
    """GET /health reports the default sandbox as ok."""
    data = client.get("/health").json()

    assert data["sandbox"] == "ok"


def test_health_degraded_when_sandbox_fails() -> None:
    """GET /health stays 200 but reports degraded when the sandbox yields nothing."""

    class _BrokenSandbox:
        def evaluate(self, expression: str | None, variables: dict[str, str]) -> str:
            return ""

    client = TestClient(create_app(fetcher=_NullFetcher(), sandbox=_BrokenSandbox()))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["sandbox"] == "failing"


@pytest.mark.parametrize(
    "header",
    ["x" * 129, "abc\tdef", "line1 line2", "id;drop"],
)
def test_health_replaces_unsafe_request_id(client: TestClient, header: str) -> None:
    """GET /health ignores an overlong or non-token X-Request-Id."""
    request_id = client.get("/health", headers={"X-Request-Id": header}).headers["X-Request-Id"]

    assert request_id != header
    assert len(request_id) == 36


def test_health_keeps_request_id_at_length_limit(client: TestClient) -> None:
    """GET /health echoes an X-Request-Id of exactly 128 token characters."""
    header = "a-b." * 32

    response = client.get("/health", headers={"X-Request-Id": header})

    assert response.headers["X-Request-Id"] == header


def test_health_trims_request_id(client: TestClient) -> None:
    """GET /health echoes a padded X-Request-Id without the padding."""
    response = client.get("/health", headers={"X-Request-Id": "  trace-42  "})

    assert response.headers["X-Request-Id"] == "trace-42"

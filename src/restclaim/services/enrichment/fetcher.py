"""Outbound HTTP calls to configured endpoints.

SourceFetcher issues one GET per endpoint with the auth header its strategy
requires and returns the raw response body, or None on any failure. It owns
an httpx.Client with a bounded connection pool and a TokenCache for OAuth2
client-credentials tokens; both are shared by every enrichment call that uses
the same fetcher instance.

Log messages carry the endpoint index, the base URL and the status code or
exception class. Secrets and response bodies are never logged.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import httpx

from restclaim.services.enrichment.errors import AuthResolutionError, NetworkError
from restclaim.services.enrichment.models import AuthType, EndpointDefinition
from restclaim.settings import EngineSettings

logger = logging.getLogger(__name__)

APIKEY_HEADER: Final[str] = "X-API-Key"
DEFAULT_TOKEN_LIFETIME_SECONDS: Final[int] = 3600
TOKEN_EXPIRY_MARGIN_SECONDS: Final[int] = 30


@dataclass(frozen=True)
class CredentialCacheEntry:
    """A cached bearer token.

    Attributes:
        token: The access token.
        expires_at: Epoch seconds after which the token is no longer reused.
    """

    token: str
    expires_at: float


class TokenCache:
    """Thread-safe OAuth2 token cache keyed by the raw credential string.

    The lock is held only around dictionary access, never while a token is
    being exchanged; two callers racing on the same cold credential may both
    exchange, and the later put wins.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize an empty cache.

        Args:
            clock: Returns the current time in epoch seconds.
        """
        self._clock = clock
        self._entries: dict[str, CredentialCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, credential: str) -> str | None:
        """Return the cached token if it is still valid."""
        with self._lock:
            entry = self._entries.get(credential)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.token

    def put(self, credential: str, token: str, expires_in: int) -> CredentialCacheEntry:
        """Store a token valid for expires_in seconds, minus the safety margin."""
        entry = CredentialCacheEntry(
            token=token,
            expires_at=self._clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS,
        )
        with self._lock:
            self._entries[credential] = entry
        return entry

    def clear(self) -> None:
        """Drop every cached token."""
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        """Return the number of cached tokens."""
        with self._lock:
            return len(self._entries)


def split_oauth2_credential(credential: str) -> tuple[str, str, str]:
    """Split "clientId:clientSecret:tokenUrl" on its first two colons.

    Raises:
        AuthResolutionError: If any of the three parts is missing.
    """
    parts = credential.split(":", 2)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise AuthResolutionError("credential must have the form clientId:clientSecret:tokenUrl")
    client_id, client_secret, token_url = (part.strip() for part in parts)
    return client_id, client_secret, token_url


class SourceFetcher:
    """Calls REST endpoints on behalf of the enrichment engine."""

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        token_cache: TokenCache | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            http_client: Optional httpx.Client for dependency injection (testing).
                When omitted, a pooled client is built from settings and owned
                by this fetcher.
            token_cache: Optional shared token cache.
            settings: Engine settings for timeouts and pool limits.
        """
        self._settings = settings or EngineSettings()
        self._token_cache = token_cache or TokenCache()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.Client(
            timeout=httpx.Timeout(
                self._settings.http_read_timeout_seconds,
                connect=self._settings.http_connect_timeout_seconds,
            ),
            limits=httpx.Limits(
                max_connections=self._settings.http_max_connections,
                max_keepalive_connections=self._settings.http_max_keepalive_connections,
            ),
        )

    @property
    def token_cache(self) -> TokenCache:
        """The token cache used for oauth2 endpoints."""
        return self._token_cache

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self._http_client.close()

    def __enter__(self) -> SourceFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch(self, endpoint: EndpointDefinition, query_string: str | None) -> str | None:
        """GET endpoint.url + query_string.

        Args:
            endpoint: Endpoint to call.
            query_string: Appended verbatim to the URL (may be empty).

        Returns:
            Response body on 2xx, None on any failure.
        """
        try:
            headers = self._build_headers(endpoint)
        except AuthResolutionError as exc:
            logger.error(
                "Endpoint %d: could not obtain OAuth2 token, skipping call: %s",
                endpoint.index,
                exc,
            )
            return None

        try:
            return self._get(endpoint, f"{endpoint.url}{query_string or ''}", headers)
        except NetworkError as exc:
            logger.error("Endpoint %d call to %s failed: %s", exc.endpoint_index, exc.url, exc)
            return None

    def _get(self, endpoint: EndpointDefinition, url: str, headers: dict[str, str]) -> str:
        try:
            response = self._http_client.get(url, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(
                type(exc).__name__, endpoint_index=endpoint.index, url=endpoint.url
            ) from exc

        if not response.is_success:
            raise NetworkError(
                f"HTTP {response.status_code}", endpoint_index=endpoint.index, url=endpoint.url
            )
        return response.text

    def _build_headers(self, endpoint: EndpointDefinition) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        credential = endpoint.auth_value

        if endpoint.auth_type == AuthType.OAUTH2:
            headers["Authorization"] = f"Bearer {self.resolve_token(credential)}"
        elif not credential or not credential.strip():
            pass
        elif endpoint.auth_type == AuthType.BASIC:
            headers["Authorization"] = f"Basic {credential}"
        else:
            headers[APIKEY_HEADER] = credential
        return headers

    def resolve_token(self, credential: str) -> str:
        """Return a bearer token for an oauth2 credential, exchanging if needed.

        Raises:
            AuthResolutionError: If the credential is malformed or the token
                endpoint does not issue a token. Nothing is cached on failure.
        """
        cached = self._token_cache.get(credential)
        if cached is not None:
            return cached

        client_id, client_secret, token_url = split_oauth2_credential(credential or "")
        token, expires_in = self._exchange(client_id, client_secret, token_url)
        self._token_cache.put(credential, token, expires_in)
        logger.debug("Obtained OAuth2 token for client %s (expires in %ds)", client_id, expires_in)
        return token

    def _exchange(self, client_id: str, client_secret: str, token_url: str) -> tuple[str, int]:
        try:
            response = self._http_client.post(
                token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                headers={"Accept": "application/json"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise AuthResolutionError(
                f"token request to {token_url} failed: {type(exc).__name__}"
            ) from exc

        if not response.is_success:
            raise AuthResolutionError(
                f"token endpoint {token_url} returned HTTP {response.status_code}"
            )

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise AuthResolutionError("token response is not valid JSON") from exc

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthResolutionError("token response has no access_token")
        return token, _parse_expires_in(payload.get("expires_in"))


def _parse_expires_in(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_TOKEN_LIFETIME_SECONDS

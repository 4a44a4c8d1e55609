"""Enrichment error taxonomy.

Every error below is raised inside the component that detects it and caught
at the smallest enclosing scope (mapping rule, endpoint, enrichment call).
None of them is allowed to abort sibling work or the surrounding token
issuance.
"""

from __future__ import annotations


class EnrichmentError(Exception):
    """Base class for all enrichment engine errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigurationError(EnrichmentError):
    """Raised when a configuration entry is malformed (e.g. a mapping rule)."""


class NetworkError(EnrichmentError):
    """Raised when an endpoint is unreachable, times out or answers non-2xx."""

    def __init__(self, message: str, *, endpoint_index: int, url: str) -> None:
        self.endpoint_index = endpoint_index
        self.url = url
        super().__init__(message)


class AuthResolutionError(EnrichmentError):
    """Raised when an OAuth2 token exchange fails.

    The message never contains the client secret.
    """


class ScriptEvaluationError(EnrichmentError):
    """Raised when a query expression cannot be parsed or evaluated."""


class ParseError(EnrichmentError):
    """Raised when a response body is not valid JSON."""


class CacheCorruptionError(EnrichmentError):
    """Raised when a stored cache marker cannot be parsed."""

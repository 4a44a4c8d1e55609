"""Enrichment engine domain models.

Defines the typed configuration produced by the config parser and consumed
on the hot path:
- AuthType, MappingRule, EndpointDefinition, MapperConfig
- Identity, CacheRecord, ClaimSet
- ExpressionEvaluator (injected query-expression capability)
"""

from __future__ import annotations

from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

ClaimValue = str | list[str]
ClaimSet = dict[str, ClaimValue]

PATH_QUERY_SIGIL = "$"


class AuthType(StrEnum):
    """Authentication strategy used when calling an endpoint.

    APIKEY: raw secret sent as X-API-Key.
    BASIC: pre-encoded credentials sent as Authorization: Basic.
    OAUTH2: client-credentials exchange, bearer token sent as Authorization.
    """

    APIKEY = "apikey"
    BASIC = "basic"
    OAUTH2 = "oauth2"


class MappingRule(BaseModel):
    """Instruction converting one response field into one claim.

    Attributes:
        source_field: Top-level field name, or a JSONPath expression when it
            starts with "$".
        claim_name: Name of the claim written into the token.
    """

    model_config = ConfigDict(frozen=True)

    source_field: str
    claim_name: str

    @field_validator("source_field", "claim_name")
    @classmethod
    def _strip_non_empty(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("mapping rule sides must be non-empty")
        return stripped

    @property
    def is_path_query(self) -> bool:
        """True if source_field is a JSONPath expression."""
        return self.source_field.startswith(PATH_QUERY_SIGIL)

    def __str__(self) -> str:
        return f"{self.source_field}→{self.claim_name}"


class EndpointDefinition(BaseModel):
    """Parsed configuration of one numbered REST endpoint slot.

    Attributes:
        index: 1-based slot number; namespaces cache keys.
        url: Base URL; the evaluated query string is appended verbatim.
        auth_type: Authentication strategy.
        auth_value: Opaque secret whose structure depends on auth_type
            (oauth2 expects "clientId:clientSecret:tokenUrl").
        variable_names: Identity-context fields exposed to the expression.
        query_expression: Expression producing the query string.
        mapping_rules: Ordered field-to-claim rules.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=1)
    url: str = ""
    auth_type: AuthType = AuthType.APIKEY
    auth_value: str = Field(default="", repr=False)
    variable_names: tuple[str, ...] = ()
    query_expression: str = ""
    mapping_rules: tuple[MappingRule, ...] = ()

    @property
    def is_configured(self) -> bool:
        """True if the endpoint has a non-blank URL."""
        return bool(self.url and self.url.strip())


class MapperConfig(BaseModel):
    """Validated configuration of one mapper instance."""

    model_config = ConfigDict(frozen=True)

    config_id: str
    endpoints: tuple[EndpointDefinition, ...] = ()
    cache_ttl_seconds: int = Field(ge=0, default=300)

    @property
    def configured_endpoints(self) -> list[EndpointDefinition]:
        """Endpoints with a URL, in slot order."""
        return [ep for ep in self.endpoints if ep.is_configured]


class Identity(BaseModel):
    """The identity a token is being issued for.

    Attributes:
        id: Stable identity identifier (the token subject).
        attributes: Multi-valued profile attributes.
        persistent: True if the identity has durable local storage and is
            therefore eligible for attribute caching.
    """

    id: str
    username: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    attributes: dict[str, list[str]] = Field(default_factory=dict)
    persistent: bool = True


class CacheRecord(BaseModel):
    """Cached claims of one (identity, endpoint) pair."""

    stored_at: int
    fingerprint: str
    claims: ClaimSet = Field(default_factory=dict)


@runtime_checkable
class ExpressionEvaluator(Protocol):
    """Capability that turns a query expression into a query string.

    Implementations must bind variable values as literals so that a value can
    never alter the structure of the expression, and must never raise.
    """

    def evaluate(self, expression: str | None, variables: dict[str, str]) -> str:
        """Evaluate the expression with the given string variables."""
        ...

"""Mapper configuration parser.

Turns the flat string key/value map supplied by the host into a validated
MapperConfig. Invalid entries are skipped here, with a warning, so the
enrichment hot path only ever sees well-formed structures.

Key layout:
    endpoint.count              int, 1..MAX_ENDPOINTS (default MAX_ENDPOINTS)
    endpoint.N.url
    endpoint.N.auth.type        apikey | basic | oauth2
    endpoint.N.auth.value
    endpoint.N.query.param.K    K in 1..MAX_QUERY_PARAMS, a context field name
    endpoint.N.query.script     expression building the query string
    endpoint.N.mapping          comma-separated "field→claim" / "field->claim"
    cache.ttl.seconds           int >= 0 (default 300)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Final

from pydantic import ValidationError

from restclaim.services.enrichment.errors import ConfigurationError
from restclaim.services.enrichment.models import (
    AuthType,
    EndpointDefinition,
    MapperConfig,
    MappingRule,
)

logger = logging.getLogger(__name__)

MAX_ENDPOINTS: Final[int] = 3
MAX_QUERY_PARAMS: Final[int] = 5
DEFAULT_CACHE_TTL_SECONDS: Final[int] = 300
DEFAULT_QUERY_SCRIPT: Final[str] = '""'

CFG_ENDPOINT_COUNT: Final[str] = "endpoint.count"
CFG_CACHE_TTL: Final[str] = "cache.ttl.seconds"

_ARROW_RE = re.compile(r"→|->")

_AUTH_TYPE_ALIASES: Final[dict[str, AuthType]] = {
    "apikey": AuthType.APIKEY,
    "api-key": AuthType.APIKEY,
    "basic": AuthType.BASIC,
    "oauth2": AuthType.OAUTH2,
    "oauth2-client-credentials": AuthType.OAUTH2,
}


def parse_mapper_config(config: Mapping[str, str], *, config_id: str) -> MapperConfig:
    """Parse a complete mapper configuration.

    Args:
        config: Flat key/value configuration map.
        config_id: Identifier of this configuration instance; namespaces the
            cache keys of every identity enriched with it.

    Returns:
        MapperConfig with only the configured endpoints.
    """
    return MapperConfig(
        config_id=config_id,
        endpoints=tuple(parse_endpoints(config)),
        cache_ttl_seconds=parse_cache_ttl(config.get(CFG_CACHE_TTL)),
    )


def parse_endpoints(config: Mapping[str, str]) -> list[EndpointDefinition]:
    """Parse endpoint slots 1..endpoint.count.

    Slots with a blank URL are skipped entirely.

    Args:
        config: Flat key/value configuration map.

    Returns:
        Endpoint definitions in slot order (may be empty).
    """
    endpoints: list[EndpointDefinition] = []
    count = _parse_endpoint_count(config.get(CFG_ENDPOINT_COUNT))

    for n in range(1, count + 1):
        prefix = f"endpoint.{n}"
        url = config.get(f"{prefix}.url")
        if url is None or not url.strip():
            continue

        variable_names: list[str] = []
        for k in range(1, MAX_QUERY_PARAMS + 1):
            name = config.get(f"{prefix}.query.param.{k}")
            if name and name.strip() and name.strip() not in variable_names:
                variable_names.append(name.strip())

        endpoints.append(
            EndpointDefinition(
                index=n,
                url=url.strip(),
                auth_type=parse_auth_type(config.get(f"{prefix}.auth.type"), endpoint_index=n),
                auth_value=config.get(f"{prefix}.auth.value") or "",
                variable_names=tuple(variable_names),
                query_expression=config.get(f"{prefix}.query.script", DEFAULT_QUERY_SCRIPT),
                mapping_rules=tuple(parse_mapping_rules(config.get(f"{prefix}.mapping"))),
            )
        )

    return endpoints


def parse_mapping_rules(mapping: str | None) -> list[MappingRule]:
    """Parse a comma-separated list of "field→claim" pairs.

    Both the Unicode arrow and the ASCII "->" spelling are accepted. Entries
    that do not split into exactly two non-empty sides are dropped with a
    warning.

    Args:
        mapping: Raw mapping text.

    Returns:
        Rules in declaration order.
    """
    rules: list[MappingRule] = []
    if mapping is None or not mapping.strip():
        return rules

    for entry in mapping.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            rules.append(_parse_mapping_entry(entry))
        except ConfigurationError as exc:
            logger.warning("Skipping mapping rule %r: %s", entry, exc)

    return rules


def _parse_mapping_entry(entry: str) -> MappingRule:
    parts = _ARROW_RE.split(entry, maxsplit=1)
    if len(parts) != 2:
        raise ConfigurationError("expected 'apiField→claimName'")

    source_field, claim_name = parts[0].strip(), parts[1].strip()
    if not source_field or not claim_name:
        raise ConfigurationError("empty field or claim")

    try:
        return MappingRule(source_field=source_field, claim_name=claim_name)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def parse_auth_type(value: str | None, *, endpoint_index: int = 0) -> AuthType:
    """Resolve an auth type name; unknown names fall back to apikey."""
    if value is None or not value.strip():
        return AuthType.APIKEY

    auth_type = _AUTH_TYPE_ALIASES.get(value.strip().lower())
    if auth_type is None:
        logger.warning(
            "Unknown auth type %r for endpoint %d, using apikey",
            value,
            endpoint_index,
        )
        return AuthType.APIKEY
    return auth_type


def parse_cache_ttl(value: str | None) -> int:
    """Parse cache.ttl.seconds; blank, negative or invalid values yield the default."""
    if value is None or not value.strip():
        return DEFAULT_CACHE_TTL_SECONDS
    try:
        ttl = int(value.strip())
    except ValueError:
        logger.warning("Invalid %s %r, using %d", CFG_CACHE_TTL, value, DEFAULT_CACHE_TTL_SECONDS)
        return DEFAULT_CACHE_TTL_SECONDS
    return ttl if ttl >= 0 else DEFAULT_CACHE_TTL_SECONDS


def _parse_endpoint_count(value: str | None) -> int:
    if value is None or not value.strip():
        return MAX_ENDPOINTS
    try:
        count = int(value.strip())
    except ValueError:
        return MAX_ENDPOINTS
    if count < 1:
        return MAX_ENDPOINTS
    return min(count, MAX_ENDPOINTS)
